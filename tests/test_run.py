import itertools

import jax
import jax.numpy as jnp
import numpy as np
import pytest

import run
from engine import make_arc_standard
from model_io import load_model, save_model
from oracle import generate_examples
from parser_model import ParserModel


def test_train_with_dev_set(tmp_path, corpus, small_config):
  sentences, trees = corpus
  model_file = str(tmp_path / "model.txt")
  model = run.train(
    sentences, trees, sentences, trees, model_file=model_file, config=small_config
  )

  assert model.system is not None
  assert model.cache is not None
  assert model.system.n_transitions == 2 * len(model.dictionaries.labels) - 1
  assert len(model.precomputed) == small_config.num_precomputed

  loaded = load_model(model_file)
  assert loaded.dictionaries == model.dictionaries
  np.testing.assert_array_equal(
    np.asarray(loaded.params["output"]["kernel"]), np.asarray(model.params["output"]["kernel"])
  )


def test_train_then_test(tmp_path, corpus, small_config):
  sentences, trees = corpus
  model_file = str(tmp_path / "model.txt.gz")
  output_file = str(tmp_path / "predicted.conll")
  run.train(sentences, trees, model_file=model_file, config=small_config)

  result = run.test(sentences, trees, model_file, output_file, small_config)
  assert set(result) == {"UAS", "LAS", "UASnoPunc", "LASnoPunc", "UEM", "UEMnoPunc", "ROOT"}
  assert all(0.0 <= v <= 1.0 for v in result.values())
  with open(output_file, encoding="utf-8") as f:
    assert sum(1 for line in f if line.strip()) == sum(s.n for s in sentences)


def test_training_lowers_the_loss(corpus, small_config):
  sentences, trees = corpus
  config = small_config._replace(max_iter=40, batch_size=32)
  before = run.train(sentences, trees, config=config._replace(max_iter=0))
  after = run.train(sentences, trees, config=config)

  data = generate_examples(
    make_arc_standard(before.dictionaries.arc_labels()),
    before.dictionaries,
    sentences,
    trees,
    0,
  )
  x, y = jnp.asarray(data.features), jnp.asarray(data.labels)

  def loss(model):
    flax_model = ParserModel(
      vocab_size=model.dictionaries.vocab_size,
      n_classes=model.system.n_transitions,
      embed_size=config.embed_size,
      hidden_size=config.hidden_size,
      dropout_rate=0.0,
    )
    value, _ = run.loss_fn(model.params, x, y, flax_model.apply, jax.random.PRNGKey(0), 0.0)
    return float(value)

  assert loss(after) < loss(before)


def test_should_stop_ends_training_early(corpus, small_config):
  sentences, trees = corpus
  calls = itertools.count()
  stop_after = len(sentences) + 2

  model = run.train(
    sentences,
    trees,
    config=small_config._replace(max_iter=1000),
    should_stop=lambda: next(calls) >= stop_after,
  )
  assert model.system is not None
  # one check per training sentence, then one per iteration until it fires
  assert next(calls) == stop_after + 1


def test_train_without_examples(dogs, small_config):
  sentence, tree = dogs
  cyclic = tree._replace(heads=(-1, 3, 0, 1))
  with pytest.raises(ValueError):
    run.train([sentence], [cyclic], config=small_config)


def test_load_pretrained_embeddings(tmp_path, dicts, params):
  path = tmp_path / "vectors.txt"
  d = params["embeddings"].shape[1]
  path.write_text(
    "dogs " + " ".join(["0.5"] * d) + "\n" + "cats " + " ".join(["-0.5"] * d) + "\n",
    encoding="utf-8",
  )
  updated = run.load_pretrained_embeddings(params, dicts, str(path))
  new = np.asarray(updated["embeddings"])
  old = np.asarray(params["embeddings"])

  # "Dogs" only matches after lowercasing, "cats" matches exactly
  np.testing.assert_allclose(new[dicts.word2id["Dogs"]], 0.5)
  np.testing.assert_allclose(new[dicts.word2id["cats"]], -0.5)
  np.testing.assert_array_equal(new[dicts.word2id["dog"]], old[dicts.word2id["dog"]])
  assert updated["hidden"] is params["hidden"]


def test_pretrained_embeddings_of_wrong_size_are_ignored(tmp_path, dicts, params):
  path = tmp_path / "vectors.txt"
  path.write_text("cats 1 2\n", encoding="utf-8")
  updated = run.load_pretrained_embeddings(params, dicts, str(path))
  np.testing.assert_array_equal(
    np.asarray(updated["embeddings"]), np.asarray(params["embeddings"])
  )


def test_sample_minibatch():
  rng = np.random.default_rng(0)
  idx = run.sample_minibatch(rng, 10, 4)
  assert len(set(idx.tolist())) == 4
  assert run.sample_minibatch(rng, 3, 10).shape == (3,)


def test_relative_model_and_output_paths_resolve_alike(
  tmp_path, monkeypatch, corpus, parsing_model, small_config
):
  sentences, trees = corpus
  monkeypatch.setenv("DATA_PATH", str(tmp_path / "data"))
  monkeypatch.chdir(tmp_path)
  save_model(parsing_model, "results/model.txt")

  run.test(sentences, trees, "results/model.txt", "results/predicted.conll", small_config)
  assert (tmp_path / "results" / "predicted.conll").is_file()
  assert not (tmp_path / "data").exists()
