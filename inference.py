import logging
import time
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from config import N_FEATURES, PUNCTUATION_TAGS
from engine import (
  ArcStandard,
  apply_transition,
  extract_features,
  initial_configuration,
  legal_mask,
  make_arc_standard,
)
from parser_model import build_precompute_cache, compute_scores
from schema import (
  Cancelled,
  Configuration,
  DependencyTree,
  IllegalTransitionError,
  ModelStateError,
  ParsingModel,
  Sentence,
  Transition,
)

logger = logging.getLogger(__name__)


def initialize(
  model: Optional[ParsingModel], precompute: bool = True, single_root: bool = False
) -> ParsingModel:
  """
  prepares a trained or loaded model for parsing: rebuilds the transition
  system from the label dictionary and, optionally, the precompute cache.
  returns a new model value; the argument is not modified.
  """
  if model is None or model.dictionaries is None or model.params is None:
    raise ModelStateError("model has not been loaded or trained")

  system = make_arc_standard(model.dictionaries.arc_labels(), single_root)
  n_out = model.params["output"]["kernel"].shape[1]
  if n_out != system.n_transitions:
    raise ModelStateError(
      f"output layer has {n_out} rows but the label dictionary implies "
      f"{system.n_transitions} transitions"
    )

  cache = None
  if precompute:
    start = time.time()
    cache = build_precompute_cache(model.params, model.precomputed)
    logger.info(
      "precomputed %d feature contributions in %.2f (s)",
      cache.saved.shape[0],
      time.time() - start,
    )
  return model._replace(system=system, cache=cache)


def select_transition(
  system: ArcStandard, c: Configuration, scores: np.ndarray
) -> Transition:
  """
  highest scoring legal transition. illegal transitions are masked out before
  the argmax, so on ties the first transition in the fixed order wins.
  """
  legal = legal_mask(system, c)
  if not legal.any():
    raise IllegalTransitionError(f"no legal transition for stack={c.stack} buffer={c.buffer}")
  masked = np.where(legal, scores, -np.inf)
  return system.transitions[int(np.argmax(masked))]


def parse(
  model: Optional[ParsingModel],
  sentences: Sequence[Sentence],
  batch_size: int = 1000,
  should_stop: Optional[Callable[[], bool]] = None,
) -> List[DependencyTree]:
  """
  greedy decoding: every sentence of n tokens takes exactly 2n transitions.
  sentences are scored in batches; each keeps its own configuration.
  """
  if model is None:
    raise ModelStateError("no model: train or load one before parsing")
  if model.system is None:
    raise ModelStateError("model is not initialized: call initialize() after loading")

  system = model.system
  dicts = model.dictionaries
  trees: List[DependencyTree] = []

  for start in range(0, len(sentences), batch_size):
    if should_stop is not None and should_stop():
      raise Cancelled(f"parsing cancelled after {start} sentences")

    batch = sentences[start : start + batch_size]
    configs = [initial_configuration(s.n) for s in batch]
    steps = [2 * s.n for s in batch]
    # finished sentences keep a zero row so every step scores the same shape
    feats = np.zeros((len(batch), N_FEATURES), dtype=np.int32)

    for step in range(max(steps, default=0)):
      if should_stop is not None and should_stop():
        raise Cancelled(f"parsing cancelled at step {step} of batch {start // batch_size}")
      active = [i for i in range(len(batch)) if step < steps[i]]
      for i in active:
        feats[i] = extract_features(configs[i], batch[i], dicts)
      scores = compute_scores(model.params, feats, model.cache)
      for i in active:
        t = select_transition(system, configs[i], scores[i])
        configs[i] = apply_transition(system, configs[i], t)

    trees.extend(c.tree for c in configs)

  return trees


def evaluate(
  sentences: Sequence[Sentence],
  predicted: Sequence[DependencyTree],
  gold: Sequence[DependencyTree],
) -> Dict[str, float]:
  """
  attachment scores as fractions. the *noPunc variants skip tokens whose gold
  POS tag is punctuation. UEM counts fully correct sentences, ROOT counts
  sentences whose root token is right.
  """
  if not len(sentences) == len(predicted) == len(gold):
    raise ValueError("sentences, predicted and gold trees differ in number")

  correct_heads = correct_arcs = n_tokens = 0
  correct_heads_np = correct_arcs_np = n_tokens_np = 0
  correct_trees = correct_trees_np = correct_root = 0

  for sent, pred, g in zip(sentences, predicted, gold):
    if pred.n != g.n or sent.n != g.n:
      raise ValueError("predicted tree, gold tree and sentence lengths differ")

    sent_heads = sent_heads_np = sent_np = 0
    for k in range(1, g.n + 1):
      head_ok = pred.get_head(k) == g.get_head(k)
      arc_ok = head_ok and pred.get_label(k) == g.get_label(k)
      sent_heads += head_ok
      correct_arcs += arc_ok
      if sent.tags[k - 1] not in PUNCTUATION_TAGS:
        sent_np += 1
        sent_heads_np += head_ok
        correct_arcs_np += arc_ok

    correct_heads += sent_heads
    correct_heads_np += sent_heads_np
    n_tokens += g.n
    n_tokens_np += sent_np
    correct_trees += sent_heads == g.n
    correct_trees_np += sent_heads_np == sent_np
    correct_root += pred.get_root() == g.get_root()

  def ratio(a, b):
    return a / b if b else 0.0

  return {
    "UAS": ratio(correct_heads, n_tokens),
    "LAS": ratio(correct_arcs, n_tokens),
    "UASnoPunc": ratio(correct_heads_np, n_tokens_np),
    "LASnoPunc": ratio(correct_arcs_np, n_tokens_np),
    "UEM": ratio(correct_trees, len(gold)),
    "UEMnoPunc": ratio(correct_trees_np, len(gold)),
    "ROOT": ratio(correct_root, len(gold)),
  }


def calculate_uas(
  model: ParsingModel,
  sentences: Sequence[Sentence],
  trees: Sequence[DependencyTree],
  batch_size: int = 1000,
) -> float:
  """unlabeled attachment score (punctuation excluded) on a held-out set."""
  predicted = parse(model, sentences, batch_size=batch_size)
  return evaluate(sentences, predicted, trees)["UASnoPunc"]
