import gzip
import logging
import math

import numpy as np
import pytest

from config import N_FEATURES
from inference import initialize, parse
from model_io import load_model, read_embedding_file, save_model
from schema import ModelFormatError, ModelStateError


def assert_same_model(a, b):
  assert a.dictionaries == b.dictionaries
  assert a.precomputed == b.precomputed
  assert (a.embed_size, a.hidden_size) == (b.embed_size, b.hidden_size)
  np.testing.assert_array_equal(np.asarray(a.params["embeddings"]), np.asarray(b.params["embeddings"]))
  for layer, name in (("hidden", "kernel"), ("hidden", "bias"), ("output", "kernel")):
    np.testing.assert_array_equal(
      np.asarray(a.params[layer][name]), np.asarray(b.params[layer][name])
    )


@pytest.mark.parametrize("name", ["model.txt", "model.txt.gz"])
def test_save_load_round_trip(tmp_path, parsing_model, name):
  path = str(tmp_path / "out" / name)
  save_model(parsing_model, path)
  loaded = load_model(path)
  assert loaded.system is None and loaded.cache is None
  assert_same_model(loaded, parsing_model)


def test_gzip_file_is_compressed(tmp_path, parsing_model):
  path = str(tmp_path / "model.txt.gz")
  save_model(parsing_model, path)
  with gzip.open(path, "rt", encoding="utf-8") as f:
    assert f.readline() == f"dict={len(parsing_model.dictionaries.words)}\n"


def test_file_layout(tmp_path, parsing_model, small_config):
  path = tmp_path / "model.txt"
  save_model(parsing_model, str(path))
  lines = path.read_text(encoding="utf-8").splitlines()
  dicts = parsing_model.dictionaries
  d, h = small_config.embed_size, small_config.hidden_size

  assert lines[:7] == [
    f"dict={len(dicts.words)}",
    f"pos={len(dicts.pos)}",
    f"label={len(dicts.labels)}",
    f"embeddingSize={d}",
    f"hiddenSize={h}",
    f"numTokens={N_FEATURES}",
    f"preComputed={len(parsing_model.precomputed)}",
  ]
  n_precomputed_lines = math.ceil(len(parsing_model.precomputed) / 100)
  assert len(lines) == 7 + dicts.vocab_size + N_FEATURES * d + 1 + h + n_precomputed_lines

  first = lines[7].split()
  assert first[0] == "-UNKNOWN-"
  assert len(first) == d + 1
  assert lines[7 + len(dicts.words) + len(dicts.pos)].split()[0] == "-NULL-"

  # each W1 line is one column of W1, i.e. one row of the flax kernel
  w1_first = [float(x) for x in lines[7 + dicts.vocab_size].split()]
  np.testing.assert_array_equal(
    np.float32(w1_first), np.asarray(parsing_model.params["hidden"]["kernel"][0])
  )
  w2_first = lines[7 + dicts.vocab_size + N_FEATURES * d + 1].split()
  assert len(w2_first) == 2 * len(dicts.labels) - 1
  assert [int(k) for k in lines[-1].split()] == list(parsing_model.precomputed[-len(lines[-1].split()):])


def test_loaded_model_needs_initialize(tmp_path, parsing_model, corpus):
  sentences, _ = corpus
  path = str(tmp_path / "model.txt")
  save_model(parsing_model, path)
  loaded = load_model(path)
  with pytest.raises(ModelStateError):
    parse(loaded, sentences)
  assert parse(initialize(loaded), sentences) == parse(parsing_model, sentences)


def test_truncated_file(tmp_path, parsing_model):
  path = tmp_path / "model.txt"
  save_model(parsing_model, str(path))
  lines = path.read_text(encoding="utf-8").splitlines(keepends=True)
  path.write_text("".join(lines[: len(lines) // 2]), encoding="utf-8")
  with pytest.raises(ModelFormatError):
    load_model(str(path))


def test_missing_precomputed_ids(tmp_path, parsing_model):
  path = tmp_path / "model.txt"
  save_model(parsing_model, str(path))
  lines = path.read_text(encoding="utf-8").splitlines(keepends=True)
  path.write_text("".join(lines[:-1]), encoding="utf-8")
  with pytest.raises(ModelFormatError):
    load_model(str(path))


def test_reordered_header(tmp_path, parsing_model):
  path = tmp_path / "model.txt"
  save_model(parsing_model, str(path))
  lines = path.read_text(encoding="utf-8").splitlines(keepends=True)
  lines[0], lines[1] = lines[1], lines[0]
  path.write_text("".join(lines), encoding="utf-8")
  with pytest.raises(ModelFormatError):
    load_model(str(path))


def test_non_numeric_weight(tmp_path, parsing_model):
  path = tmp_path / "model.txt"
  save_model(parsing_model, str(path))
  lines = path.read_text(encoding="utf-8").splitlines(keepends=True)
  w1_line = 7 + parsing_model.dictionaries.vocab_size
  lines[w1_line] = "abc " + lines[w1_line].split(" ", 1)[1]
  path.write_text("".join(lines), encoding="utf-8")
  with pytest.raises(ModelFormatError):
    load_model(str(path))


def test_wrong_feature_count(tmp_path, parsing_model):
  path = tmp_path / "model.txt"
  save_model(parsing_model, str(path))
  lines = path.read_text(encoding="utf-8").splitlines(keepends=True)
  lines[5] = "numTokens=40\n"
  path.write_text("".join(lines), encoding="utf-8")
  with pytest.raises(ModelFormatError, match="numTokens"):
    load_model(str(path))


def test_read_embedding_file(tmp_path, caplog):
  path = tmp_path / "vectors.txt"
  path.write_text("the 0.1 0.2 0.3\ndog -1 0 1\n\n", encoding="utf-8")

  with caplog.at_level(logging.WARNING, logger="model_io"):
    embed_id, matrix = read_embedding_file(str(path), 3)
  assert not caplog.records
  assert embed_id == {"the": 0, "dog": 1}
  np.testing.assert_allclose(matrix[1], [-1.0, 0.0, 1.0])

  with caplog.at_level(logging.WARNING, logger="model_io"):
    _, matrix = read_embedding_file(str(path), 5)
  assert matrix.shape == (2, 3)
  assert any("mismatch" in r.getMessage() for r in caplog.records)


def test_malformed_embedding_line(tmp_path):
  path = tmp_path / "vectors.txt"
  path.write_text("the 0.1 0.2 0.3\ndog -1 0\n", encoding="utf-8")
  with pytest.raises(ValueError):
    read_embedding_file(str(path), 3)
