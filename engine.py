from typing import Dict, NamedTuple, Sequence, Tuple

import numpy as np

from config import N_FEATURES
from schema import (
  Configuration,
  Dictionaries,
  DependencyTree,
  IllegalTransitionError,
  Sentence,
  Transition,
)

SHIFT = "S"
LEFT_ARC = "L"
RIGHT_ARC = "R"


class ArcStandard(NamedTuple):
  """
  the arc-standard transition set. transitions are ordered
  [L(l) for l in labels] + [R(l) for l in labels] + [S]; this order is shared
  by the scorer output, the training labels and the model file.
  """

  labels: Tuple[str, ...]  # root label first
  transitions: Tuple[Transition, ...]
  index: Dict[Transition, int]
  single_root: bool = False

  @property
  def root_label(self) -> str:
    return self.labels[0]

  @property
  def n_transitions(self) -> int:
    return len(self.transitions)


def make_arc_standard(labels: Sequence[str], single_root: bool = False) -> ArcStandard:
  """labels: arc labels with the root label first (Dictionaries.arc_labels())."""
  labels = tuple(labels)
  if not labels:
    raise ValueError("at least one arc label (the root label) is required")
  transitions = (
    tuple(Transition(LEFT_ARC, ll) for ll in labels)
    + tuple(Transition(RIGHT_ARC, ll) for ll in labels)
    + (Transition(SHIFT),)
  )
  index = {t: i for i, t in enumerate(transitions)}
  return ArcStandard(labels, transitions, index, single_root)


def initial_configuration(sentence_len: int) -> Configuration:
  """stack holds ROOT (index 0), buffer holds 1..n, no arcs."""
  return Configuration(
    stack=(0,),
    buffer=tuple(range(1, sentence_len + 1)),
    tree=DependencyTree.empty(sentence_len),
  )


def is_terminal(c: Configuration) -> bool:
  return not c.buffer and c.stack == (0,)


def get_stack(c: Configuration, i: int) -> int:
  """i-th element from the top of the stack, -1 when missing."""
  return c.stack[-1 - i] if 0 <= i < len(c.stack) else -1


def get_buffer(c: Configuration, i: int) -> int:
  return c.buffer[i] if 0 <= i < len(c.buffer) else -1


def get_left_child(c: Configuration, k: int, cnt: int = 1) -> int:
  """cnt-th leftmost dependent of k attached so far, -1 when missing."""
  if k < 0 or k > c.tree.n:
    return -1
  found = 0
  for i in range(1, k):
    if c.tree.heads[i] == k:
      found += 1
      if found == cnt:
        return i
  return -1


def get_right_child(c: Configuration, k: int, cnt: int = 1) -> int:
  if k < 0 or k > c.tree.n:
    return -1
  found = 0
  for i in range(c.tree.n, k, -1):
    if c.tree.heads[i] == k:
      found += 1
      if found == cnt:
        return i
  return -1


def can_apply(system: ArcStandard, c: Configuration, t: Transition) -> bool:
  n_stack = len(c.stack)
  n_buffer = len(c.buffer)

  if t.kind == SHIFT:
    return n_buffer > 0

  head = get_stack(c, 0) if t.kind == LEFT_ARC else get_stack(c, 1)
  if head < 0:
    return False
  # only the root label may hang off ROOT
  if head == 0 and t.label != system.root_label:
    return False

  if t.kind == LEFT_ARC:
    return n_stack > 2
  if system.single_root:
    return n_stack > 2 or (n_stack == 2 and n_buffer == 0)
  return n_stack >= 2


def legal_mask(system: ArcStandard, c: Configuration) -> np.ndarray:
  return np.array([can_apply(system, c, t) for t in system.transitions], dtype=bool)


def apply_transition(system: ArcStandard, c: Configuration, t: Transition) -> Configuration:
  """returns the successor configuration; `c` itself is left untouched."""
  if not can_apply(system, c, t):
    raise IllegalTransitionError(f"cannot apply {t} to stack={c.stack} buffer={c.buffer}")

  if t.kind == SHIFT:
    return c._replace(stack=c.stack + (c.buffer[0],), buffer=c.buffer[1:])

  s0, s1 = c.stack[-1], c.stack[-2]
  if t.kind == LEFT_ARC:
    head, dep = s0, s1
    stack = c.stack[:-2] + (s0,)
  else:
    head, dep = s1, s0
    stack = c.stack[:-1]

  heads = c.tree.heads[:dep] + (head,) + c.tree.heads[dep + 1 :]
  labels = c.tree.labels[:dep] + (t.label,) + c.tree.labels[dep + 1 :]
  return c._replace(stack=stack, tree=DependencyTree(heads, labels))


def extract_features(
  c: Configuration, sentence: Sentence, dicts: Dictionaries
) -> np.ndarray:
  """
  extracts 48 features (18 word ids, 18 POS ids, 12 label ids) from the
  current configuration. missing positions map to NULL.
  """
  positions = [get_stack(c, 2), get_stack(c, 1), get_stack(c, 0)]
  positions += [get_buffer(c, 0), get_buffer(c, 1), get_buffer(c, 2)]

  # children of s0, then of s1
  arc_positions = []
  for j in range(2):
    k = get_stack(c, j)
    lc = get_left_child(c, k)
    rc = get_right_child(c, k)
    arc_positions += [
      lc,
      rc,
      get_left_child(c, k, 2),
      get_right_child(c, k, 2),
      get_left_child(c, lc),
      get_right_child(c, rc),
    ]
  positions += arc_positions

  word_features = [dicts.word_id(sentence.get_word(k)) for k in positions]
  pos_features = [dicts.pos_id(sentence.get_pos(k)) for k in positions]
  label_features = [dicts.label_id(c.tree.get_label(k)) for k in arc_positions]

  features = np.array(word_features + pos_features + label_features, dtype=np.int32)
  assert features.shape[0] == N_FEATURES
  return features
