import os
import time
import logging
from typing import Callable, Dict, Optional, Sequence

import numpy as np
import jax
import jax.numpy as jnp
import optax
from dotenv import load_dotenv
from flax.core import unfreeze
from flax.training import train_state

from config import N_FEATURES, ParserConfig, load_config
from data_loader import build_dictionaries, load_conll_data, tree_stats, write_conll
from engine import make_arc_standard
from inference import calculate_uas, evaluate, initialize, parse
from model_io import load_model, read_embedding_file, save_model
from oracle import generate_examples
from parser_model import ParserModel
from schema import DependencyTree, Dictionaries, ParsingModel, Sentence

logger = logging.getLogger(__name__)

# score given to illegal transitions inside the loss
ILLEGAL_SCORE = -1e9


def create_learning_pipeline(model, params, config: ParserConfig):
  """initializes the AdaGrad optimizer and Flax train state."""
  tx = optax.adagrad(
    learning_rate=config.ada_alpha, initial_accumulator_value=0.0, eps=config.ada_eps
  )
  return train_state.TrainState.create(apply_fn=model.apply, params=params, tx=tx)


def loss_fn(params, batch_x, batch_y, model_apply_fn, dropout_rng, reg_parameter):
  """
  pure loss function.
  batch_x: (batch_size, n_features) - feature ids
  batch_y: (batch_size, n_transitions) - 1 gold, 0 legal, -1 illegal
  softmax cross entropy over the legal transitions plus L2 on W1, b1, W2 and
  on the embedding rows the batch touches.
  """
  logits = model_apply_fn(
    {"params": params}, batch_x, train=True, rngs={"dropout": dropout_rng}
  )
  logits = jnp.where(batch_y >= 0, logits, ILLEGAL_SCORE)
  gold = jnp.argmax(batch_y, axis=-1)
  loss = jnp.mean(optax.softmax_cross_entropy_with_integer_labels(logits, gold))
  accuracy = jnp.mean(jnp.argmax(logits, axis=-1) == gold)

  embeddings = params["embeddings"]
  touched = jnp.zeros(embeddings.shape[0], dtype=bool).at[batch_x.reshape(-1)].set(True)
  l2 = jnp.sum(jnp.where(touched[:, None], jnp.square(embeddings), 0.0))
  l2 += jnp.sum(jnp.square(params["hidden"]["kernel"]))
  l2 += jnp.sum(jnp.square(params["hidden"]["bias"]))
  l2 += jnp.sum(jnp.square(params["output"]["kernel"]))
  return loss + 0.5 * reg_parameter * l2, accuracy


@jax.jit
def train_step(state, batch_x, batch_y, dropout_rng, reg_parameter):
  """one AdaGrad update from the gradients of a minibatch."""
  grad_fn = jax.value_and_grad(loss_fn, has_aux=True)
  (loss, accuracy), grads = grad_fn(
    state.params, batch_x, batch_y, state.apply_fn, dropout_rng, reg_parameter
  )
  state = state.apply_gradients(grads=grads)
  return state, loss, accuracy


def init_params(model: ParserModel, rng):
  """initializes all parameters uniformly in [-init_range, init_range]."""
  variables = model.init(rng, jnp.zeros((1, N_FEATURES), dtype=jnp.int32), train=False)
  return unfreeze(variables["params"])


def load_pretrained_embeddings(params, dicts: Dictionaries, embedding_file: str):
  """
  copies pretrained vectors into the word rows, exact match first and then
  lowercase. vectors of the wrong dimension are ignored.
  """
  embed_id, pretrained = read_embedding_file(embedding_file, params["embeddings"].shape[1])
  embeddings = np.array(params["embeddings"])

  found = 0
  if pretrained.shape[1] == embeddings.shape[1]:
    for i, word in enumerate(dicts.words):
      index = embed_id.get(word)
      if index is None:
        index = embed_id.get(word.lower())
      if index is not None:
        embeddings[i] = pretrained[index]
        found += 1
  logger.info("found embeddings: %d / %d", found, len(dicts.words))

  params = dict(params)
  params["embeddings"] = jnp.asarray(embeddings)
  return params


def sample_minibatch(rng: np.random.Generator, n: int, batch_size: int) -> np.ndarray:
  """indices of a random minibatch drawn without replacement."""
  return rng.choice(n, size=min(batch_size, n), replace=False)


def train(
  train_sents: Sequence[Sentence],
  train_trees: Sequence[DependencyTree],
  dev_sents: Optional[Sequence[Sentence]] = None,
  dev_trees: Optional[Sequence[DependencyTree]] = None,
  embedding_file: Optional[str] = None,
  model_file: Optional[str] = None,
  config: Optional[ParserConfig] = None,
  should_stop: Optional[Callable[[], bool]] = None,
) -> ParsingModel:
  """
  trains a parser and returns it initialized for parsing. the parameters with
  the best dev UAS are kept when a dev set is given, the last ones otherwise.
  """
  config = config or load_config()
  tree_stats("train", train_trees)
  if dev_trees is not None:
    tree_stats("dev", dev_trees)

  dicts = build_dictionaries(train_sents, train_trees, config.word_cutoff)
  system = make_arc_standard(dicts.arc_labels(), config.single_root)
  logger.info("#transitions: %d", system.n_transitions)

  model = ParserModel(
    vocab_size=dicts.vocab_size,
    n_classes=system.n_transitions,
    embed_size=config.embed_size,
    hidden_size=config.hidden_size,
    dropout_rate=config.dropout_rate,
    init_range=config.init_range,
  )
  rng = jax.random.PRNGKey(config.seed)
  model_rng, dropout_rng = jax.random.split(rng)
  params = init_params(model, model_rng)
  if embedding_file is not None:
    params = load_pretrained_embeddings(params, dicts, embedding_file)

  logger.info("generating training instances via oracle...")
  dataset = generate_examples(
    system, dicts, train_sents, train_trees, config.num_precomputed, should_stop
  )
  n_train = dataset.features.shape[0]
  if n_train == 0:
    raise ValueError("no training examples: every training tree was skipped")

  state = create_learning_pipeline(model, params, config)
  np_rng = np.random.default_rng(config.seed)

  def snapshot(p) -> ParsingModel:
    return ParsingModel(
      dictionaries=dicts,
      params=p,
      precomputed=dataset.precomputed,
      embed_size=config.embed_size,
      hidden_size=config.hidden_size,
    )

  best_uas = -1.0
  best_params = None
  start_time = time.time()
  logger.info("starting training with %d instances...", n_train)

  for it in range(config.max_iter):
    if should_stop is not None and should_stop():
      logger.info("training stopped before iteration %d", it)
      break

    idx = sample_minibatch(np_rng, n_train, config.batch_size)
    dropout_rng, step_rng = jax.random.split(dropout_rng)
    state, loss, accuracy = train_step(
      state,
      jnp.asarray(dataset.features[idx]),
      jnp.asarray(dataset.labels[idx]),
      step_rng,
      config.reg_parameter,
    )
    loss = float(loss)
    if np.isnan(loss):
      raise FloatingPointError(f"train loss is NaN at iteration {it}")
    logger.info(
      "iteration %d | loss: %.4f | accuracy: %.4f | elapsed: %.2f (s)",
      it,
      loss,
      float(accuracy),
      time.time() - start_time,
    )

    if dev_sents is not None and it % config.eval_per_iter == 0:
      # the cache is rebuilt from the current parameters for every evaluation
      current = initialize(snapshot(state.params), True, config.single_root)
      uas = calculate_uas(current, dev_sents, dev_trees, config.decode_batch_size)
      logger.info("dev UAS: %.2f%%", uas * 100.0)
      if uas > best_uas:
        best_uas = uas
        best_params = state.params
        logger.info("  -> new best UAS: %.2f%%", best_uas * 100.0)

  result = snapshot(best_params if best_params is not None else state.params)
  if model_file is not None:
    save_model(result, model_file)
  return initialize(result, True, config.single_root)


def test(
  test_sents: Sequence[Sentence],
  test_trees: Sequence[DependencyTree],
  model_file: str,
  output_file: Optional[str] = None,
  config: Optional[ParserConfig] = None,
) -> Dict[str, float]:
  """loads a model, parses the test set and reports attachment scores."""
  config = config or load_config()
  model = initialize(load_model(model_file), True, config.single_root)

  start_time = time.time()
  predicted = parse(model, test_sents, config.decode_batch_size)
  logger.info(
    "parsed %d sentences in %.2f (s)", len(predicted), time.time() - start_time
  )

  result = evaluate(test_sents, predicted, test_trees)
  logger.info("UAS = %.2f", result["UASnoPunc"] * 100.0)
  logger.info("LAS = %.2f", result["LASnoPunc"] * 100.0)

  if output_file is not None:
    write_conll(output_file, test_sents, predicted)
  return result


def main():
  logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
  )

  load_dotenv()
  config = load_config()
  logger.info("loading data from %s...", os.getenv("DATA_PATH", "./data"))

  train_sents, train_trees = load_conll_data(os.getenv("TRAIN_FILE", "train.conll"))
  dev_sents, dev_trees = load_conll_data(os.getenv("DEV_FILE", "dev.conll"))
  test_sents, test_trees = load_conll_data(os.getenv("TEST_FILE", "test.conll"))
  model_file = os.getenv("MODEL_FILE", "results/model.txt.gz")

  logger.info(
    "train sentences: %d | dev: %d | test: %d",
    len(train_sents),
    len(dev_sents),
    len(test_sents),
  )

  train(
    train_sents,
    train_trees,
    dev_sents,
    dev_trees,
    embedding_file=os.getenv("EMBEDDING_FILE"),
    model_file=model_file,
    config=config,
  )

  logger.info("restoring saved model for final testing...")
  result = test(test_sents, test_trees, model_file, os.getenv("OUTPUT_FILE"), config)

  logger.info("")
  logger.info("=" * 60)
  logger.info("test summary:")
  for key in ("UAS", "LAS", "UASnoPunc", "LASnoPunc", "UEM", "ROOT"):
    logger.info("  %s: %.2f%%", key, result[key] * 100.0)
  logger.info("=" * 60)


if __name__ == "__main__":
  main()
