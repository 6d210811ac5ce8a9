from typing import Any, Dict, NamedTuple, Optional, Tuple

import numpy as np

from config import UNKNOWN, NULL, ROOT


class ModelStateError(RuntimeError):
  """raised when parsing is requested before a model is trained, loaded or initialized."""


class ModelFormatError(ValueError):
  """raised when a model file is malformed or truncated."""


class IllegalTransitionError(RuntimeError):
  """raised when an illegal transition is about to be applied (invariant violation)."""


class Cancelled(RuntimeError):
  """raised when a cooperative cancellation check fires."""


class Sentence(NamedTuple):
  """a tokenized, POS-tagged sentence. index i holds token i + 1."""

  words: Tuple[str, ...]
  tags: Tuple[str, ...]

  @property
  def n(self) -> int:
    return len(self.words)

  def get_word(self, k: int) -> str:
    if k == 0:
      return ROOT
    if k < 0 or k > len(self.words):
      return NULL
    return self.words[k - 1]

  def get_pos(self, k: int) -> str:
    if k == 0:
      return ROOT
    if k < 0 or k > len(self.tags):
      return NULL
    return self.tags[k - 1]


class DependencyTree(NamedTuple):
  """
  a (possibly partial) dependency tree.
  position 0 is the synthetic ROOT; real tokens are 1..n.
  a head of -1 means "not attached yet".
  """

  heads: Tuple[int, ...]
  labels: Tuple[Optional[str], ...]

  @classmethod
  def from_conll(cls, heads, labels) -> "DependencyTree":
    """builds a tree from 1-indexed CoNLL head / deprel columns (token 1 first)."""
    if len(heads) != len(labels):
      raise ValueError("heads and labels differ in length")
    return cls(heads=(-1,) + tuple(int(h) for h in heads), labels=(None,) + tuple(labels))

  @classmethod
  def empty(cls, n: int) -> "DependencyTree":
    return cls(heads=(-1,) * (n + 1), labels=(None,) * (n + 1))

  @property
  def n(self) -> int:
    return len(self.heads) - 1

  def get_head(self, k: int) -> int:
    return self.heads[k] if 0 < k <= self.n else -1

  def get_label(self, k: int) -> str:
    if 0 < k <= self.n and self.labels[k] is not None:
      return self.labels[k]
    return NULL

  def get_root(self) -> int:
    for k in range(1, self.n + 1):
      if self.heads[k] == 0:
        return k
    return 0

  def is_tree(self) -> bool:
    """every head is in range and following heads from any token reaches ROOT."""
    n = self.n
    if any(h < 0 or h > n for h in self.heads[1:]):
      return False
    visited = [-1] * (n + 1)
    for i in range(1, n + 1):
      k = i
      while k > 0:
        if 0 <= visited[k] < i:
          break
        if visited[k] == i:
          return False
        visited[k] = i
        k = self.heads[k]
    return True

  def is_projective(self) -> bool:
    """
    true iff the tree is well formed and an in-order walk from ROOT visits
    tokens in sentence order (no crossing arcs).
    """
    if not self.is_tree():
      return False
    children = [[] for _ in range(self.n + 1)]
    for k in range(1, self.n + 1):
      children[self.heads[k]].append(k)

    order = []
    # iterative in-order walk: left children, node, right children
    todo = [(0, False)]
    while todo:
      node, expanded = todo.pop()
      if expanded:
        order.append(node)
        continue
      left = [c for c in children[node] if c < node]
      right = [c for c in children[node] if c > node]
      for c in reversed(right):
        todo.append((c, False))
      todo.append((node, True))
      for c in reversed(left):
        todo.append((c, False))
    return order == list(range(self.n + 1))


class Transition(NamedTuple):
  """SHIFT ('S'), LEFT-ARC ('L', label) or RIGHT-ARC ('R', label)."""

  kind: str
  label: Optional[str] = None

  def __str__(self) -> str:
    return self.kind if self.label is None else f"{self.kind}({self.label})"


class Configuration(NamedTuple):
  """the immutable state of the arc-standard parser."""

  stack: Tuple[int, ...]  # bottom first, top last; stack[0] is ROOT
  buffer: Tuple[int, ...]  # front first
  tree: DependencyTree  # arcs assigned so far


class Dictionaries(NamedTuple):
  """word / POS / label vocabularies sharing one global id space."""

  words: Tuple[str, ...]
  pos: Tuple[str, ...]
  labels: Tuple[str, ...]
  word2id: Dict[str, int]
  pos2id: Dict[str, int]
  label2id: Dict[str, int]

  @property
  def vocab_size(self) -> int:
    return len(self.words) + len(self.pos) + len(self.labels)

  @property
  def root_label(self) -> str:
    return self.labels[1]

  def arc_labels(self) -> Tuple[str, ...]:
    """labels usable on arcs: the label dictionary without NULL (root label first)."""
    return self.labels[1:]

  def word_id(self, s: str) -> int:
    # the synthetic ROOT token shares the NULL embedding
    if s == ROOT:
      s = NULL
    return self.word2id.get(s, self.word2id[UNKNOWN])

  def pos_id(self, s: str) -> int:
    if s == ROOT:
      s = NULL
    return self.pos2id.get(s, self.pos2id[UNKNOWN])

  def label_id(self, s: str) -> int:
    return self.label2id.get(s, self.label2id[NULL])


class Dataset(NamedTuple):
  """oracle-generated training examples."""

  features: np.ndarray  # (n_examples, n_features) global ids
  labels: np.ndarray  # (n_examples, n_transitions): 1 oracle, 0 legal, -1 illegal
  precomputed: Tuple[int, ...]  # most frequent id * n_features + slot keys
  n_skipped: int  # non-projective trees left out


class ParsingModel(NamedTuple):
  """
  everything needed to parse: produced once by training or loading and
  read-only afterwards. `system` and `cache` are filled in by initialize().
  """

  dictionaries: Dictionaries
  params: Any  # flax parameter tree
  precomputed: Tuple[int, ...]
  embed_size: int
  hidden_size: int
  system: Any = None  # engine.ArcStandard
  cache: Any = None  # parser_model.PrecomputeCache
