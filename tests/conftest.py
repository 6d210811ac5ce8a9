import jax
import pytest

import run
from config import ParserConfig
from data_loader import build_dictionaries
from engine import make_arc_standard
from inference import initialize
from oracle import generate_examples
from parser_model import ParserModel
from schema import DependencyTree, ParsingModel, Sentence


def make_example(words, tags, heads, labels):
  return Sentence(tuple(words), tuple(tags)), DependencyTree.from_conll(heads, labels)


@pytest.fixture
def dogs():
  return make_example(
    ["Dogs", "chase", "cats"],
    ["NNS", "VBZ", "NNS"],
    [2, 0, 2],
    ["nsubj", "root", "obj"],
  )


@pytest.fixture
def corpus(dogs):
  examples = [
    dogs,
    make_example(
      ["The", "dog", "barked", "."],
      ["DT", "NN", "VBD", "."],
      [2, 3, 0, 3],
      ["det", "nsubj", "root", "punct"],
    ),
    make_example(
      ["Cats", "sleep", "."],
      ["NNS", "VBP", "."],
      [2, 0, 2],
      ["nsubj", "root", "punct"],
    ),
    make_example(
      ["The", "cats", "chase", "the", "dog", "."],
      ["DT", "NNS", "VBP", "DT", "NN", "."],
      [2, 3, 0, 5, 3, 3],
      ["det", "nsubj", "root", "det", "obj", "punct"],
    ),
    # crossing arcs 3 -> 1 and 4 -> 2
    make_example(
      ["A", "hearing", "is", "scheduled"],
      ["DT", "NN", "VBZ", "VBN"],
      [3, 4, 0, 3],
      ["nsubj", "dep", "root", "xcomp"],
    ),
  ]
  sentences = [s for s, _ in examples]
  trees = [t for _, t in examples]
  return sentences, trees


@pytest.fixture
def small_config():
  return ParserConfig(
    init_range=0.1,
    max_iter=4,
    batch_size=16,
    ada_alpha=0.05,
    dropout_rate=0.0,
    hidden_size=8,
    embed_size=6,
    num_precomputed=40,
    eval_per_iter=2,
    decode_batch_size=2,
  )


@pytest.fixture
def dicts(corpus):
  sentences, trees = corpus
  return build_dictionaries(sentences, trees)


@pytest.fixture
def system(dicts):
  return make_arc_standard(dicts.arc_labels())


@pytest.fixture
def dataset(corpus, dicts, system, small_config):
  sentences, trees = corpus
  return generate_examples(system, dicts, sentences, trees, small_config.num_precomputed)


@pytest.fixture
def flax_model(dicts, system, small_config):
  return ParserModel(
    vocab_size=dicts.vocab_size,
    n_classes=system.n_transitions,
    embed_size=small_config.embed_size,
    hidden_size=small_config.hidden_size,
    dropout_rate=small_config.dropout_rate,
    init_range=small_config.init_range,
  )


@pytest.fixture
def params(flax_model):
  return run.init_params(flax_model, jax.random.PRNGKey(0))


@pytest.fixture
def parsing_model(dicts, params, dataset, small_config):
  model = ParsingModel(
    dictionaries=dicts,
    params=params,
    precomputed=dataset.precomputed,
    embed_size=small_config.embed_size,
    hidden_size=small_config.hidden_size,
  )
  return initialize(model, precompute=True)
