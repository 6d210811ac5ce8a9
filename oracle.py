import logging
from collections import Counter
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from config import N_FEATURES
from engine import (
  ArcStandard,
  LEFT_ARC,
  RIGHT_ARC,
  SHIFT,
  apply_transition,
  can_apply,
  extract_features,
  get_stack,
  initial_configuration,
)
from schema import (
  Cancelled,
  Configuration,
  Dataset,
  DependencyTree,
  Dictionaries,
  Sentence,
  Transition,
)

logger = logging.getLogger(__name__)


def has_other_child(c: Configuration, k: int, gold: DependencyTree) -> bool:
  """true if k still has gold dependents that are not attached to it yet."""
  for i in range(1, gold.n + 1):
    if gold.heads[i] == k and c.tree.heads[i] != k:
      return True
  return False


def get_gold_transition(c: Configuration, gold: DependencyTree) -> Transition:
  """
  static oracle:
  LEFT-ARC if s1 (not ROOT) is a complete gold dependent of s0,
  RIGHT-ARC if s0 is a complete gold dependent of s1, SHIFT otherwise.
  """
  s0 = get_stack(c, 0)
  s1 = get_stack(c, 1)

  if s1 > 0 and gold.get_head(s1) == s0 and not has_other_child(c, s1, gold):
    return Transition(LEFT_ARC, gold.get_label(s1))
  if s1 >= 0 and gold.get_head(s0) == s1 and not has_other_child(c, s0, gold):
    return Transition(RIGHT_ARC, gold.get_label(s0))
  return Transition(SHIFT)


def transition_labels(
  system: ArcStandard, c: Configuration, gold_transition: Transition
) -> np.ndarray:
  """1 for the oracle transition, 0 for other legal ones, -1 for illegal ones."""
  labels = np.full(system.n_transitions, -1, dtype=np.int32)
  for j, t in enumerate(system.transitions):
    if t == gold_transition:
      labels[j] = 1
    elif can_apply(system, c, t):
      labels[j] = 0
  return labels


def oracle_step(
  system: ArcStandard,
  c: Configuration,
  sentence: Sentence,
  gold: DependencyTree,
  dicts: Dictionaries,
) -> tuple:
  """
  a single step of the oracle used for generating training instances.
  """
  features = extract_features(c, sentence, dicts)
  gold_transition = get_gold_transition(c, gold)
  labels = transition_labels(system, c, gold_transition)
  next_c = apply_transition(system, c, gold_transition)
  return features, labels, next_c


def oracle_sequence(system: ArcStandard, gold: DependencyTree) -> List[Transition]:
  """replays the oracle for 2n steps and returns the transitions taken."""
  c = initial_configuration(gold.n)
  sequence = []
  for _ in range(2 * gold.n):
    t = get_gold_transition(c, gold)
    sequence.append(t)
    c = apply_transition(system, c, t)
  return sequence


def _derivable(system: ArcStandard, gold: DependencyTree) -> bool:
  # every gold label must be a known transition and ROOT arcs need the root label
  if system.single_root and gold.heads.count(0) != 1:
    return False
  for k in range(1, gold.n + 1):
    label = gold.labels[k]
    if label not in system.labels:
      return False
    if gold.heads[k] == 0 and label != system.root_label:
      return False
  return True


def select_precomputed(counts: Counter, n_precomputed: int) -> Tuple[int, ...]:
  """the n most frequent id * N_FEATURES + slot keys (ties broken by smaller key)."""
  ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
  return tuple(key for key, _ in ranked[:n_precomputed])


def generate_examples(
  system: ArcStandard,
  dicts: Dictionaries,
  sentences: Sequence[Sentence],
  trees: Sequence[DependencyTree],
  n_precomputed: int,
  should_stop: Optional[Callable[[], bool]] = None,
) -> Dataset:
  """
  example generation: replays the static oracle for exactly
  2n steps on every projective gold tree. non-projective trees are skipped.
  """
  if len(sentences) != len(trees):
    raise ValueError(f"{len(sentences)} sentences but {len(trees)} trees")

  all_features: List[np.ndarray] = []
  all_labels: List[np.ndarray] = []
  counts: Counter = Counter()
  n_skipped = 0
  slots = np.arange(N_FEATURES)

  for sent_idx, (sent, gold) in enumerate(zip(sentences, trees)):
    if should_stop is not None and should_stop():
      raise Cancelled(f"example generation cancelled at sentence {sent_idx}")

    if sent.n != gold.n:
      raise ValueError(f"sentence {sent_idx}: {sent.n} tokens but {gold.n} tree nodes")
    if not gold.is_projective() or not _derivable(system, gold):
      n_skipped += 1
      continue

    c = initial_configuration(gold.n)
    for _ in range(2 * gold.n):
      feats, labels, c = oracle_step(system, c, sent, gold, dicts)
      all_features.append(feats)
      all_labels.append(labels)
      counts.update((feats.astype(np.int64) * N_FEATURES + slots).tolist())

    if (sent_idx + 1) % 1000 == 0:
      logger.info(
        "processed %d sentences; instances so far: %d", sent_idx + 1, len(all_labels)
      )

  if n_skipped:
    logger.info("skipped %d non-projective or underivable trees", n_skipped)
  logger.info("#train examples: %d", len(all_labels))

  if all_features:
    features = np.stack(all_features, axis=0)
    labels = np.stack(all_labels, axis=0)
  else:
    features = np.zeros((0, N_FEATURES), dtype=np.int32)
    labels = np.zeros((0, system.n_transitions), dtype=np.int32)

  return Dataset(
    features=features,
    labels=labels,
    precomputed=select_precomputed(counts, n_precomputed),
    n_skipped=n_skipped,
  )
