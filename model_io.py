import gzip
import logging
import os
from typing import Dict, Iterator, List, Tuple

import jax.numpy as jnp
import numpy as np

from config import N_FEATURES
from data_loader import make_dictionaries
from schema import ModelFormatError, ParsingModel

logger = logging.getLogger(__name__)

HEADER_KEYS = ("dict", "pos", "label", "embeddingSize", "hiddenSize", "numTokens", "preComputed")
PRECOMPUTED_PER_LINE = 100


def _open(path: str, mode: str):
  if path.endswith(".gz"):
    return gzip.open(path, mode + "t", encoding="utf-8")
  return open(path, mode, encoding="utf-8")


def _format_row(values) -> str:
  # repr() of a python float is the shortest text that reads back exactly
  return " ".join(repr(v) for v in np.asarray(values, dtype=np.float64).tolist())


def save_model(model: ParsingModel, path: str) -> None:
  """writes dictionaries, parameters and precomputed keys in the text model format."""
  dicts = model.dictionaries
  params = model.params
  embeddings = np.asarray(params["embeddings"])
  w1 = np.asarray(params["hidden"]["kernel"])  # (n_features * d, h): row j = column j of W1
  b1 = np.asarray(params["hidden"]["bias"])
  w2 = np.asarray(params["output"]["kernel"])  # (h, n_transitions): row j = column j of W2
  embed_size = embeddings.shape[1]

  if embeddings.shape[0] != dicts.vocab_size:
    raise ValueError(
      f"embedding rows ({embeddings.shape[0]}) do not match dictionaries ({dicts.vocab_size})"
    )

  directory = os.path.dirname(path)
  if directory:
    os.makedirs(directory, exist_ok=True)

  header = (
    len(dicts.words),
    len(dicts.pos),
    len(dicts.labels),
    embed_size,
    b1.shape[0],
    w1.shape[0] // embed_size,
    len(model.precomputed),
  )
  with _open(path, "w") as f:
    for key, value in zip(HEADER_KEYS, header):
      f.write(f"{key}={value}\n")

    for i, token in enumerate(dicts.words + dicts.pos + dicts.labels):
      f.write(token + " " + _format_row(embeddings[i]) + "\n")
    for row in w1:
      f.write(_format_row(row) + "\n")
    f.write(_format_row(b1) + "\n")
    for row in w2:
      f.write(_format_row(row) + "\n")

    keys = [str(k) for k in model.precomputed]
    for start in range(0, len(keys), PRECOMPUTED_PER_LINE):
      f.write(" ".join(keys[start : start + PRECOMPUTED_PER_LINE]) + "\n")

  logger.info("model saved to %s", path)


def _read_header(lines: Iterator[str]) -> Dict[str, int]:
  header = {}
  for expected in HEADER_KEYS:
    line = _next_line(lines)
    key, sep, value = line.partition("=")
    if not sep or key.strip() != expected:
      raise ModelFormatError(f"expected header field {expected!r}, got {line!r}")
    try:
      header[expected] = int(value)
    except ValueError as e:
      raise ModelFormatError(f"header field {expected!r} is not an integer: {value!r}") from e
    if header[expected] < 0:
      raise ModelFormatError(f"header field {expected!r} is negative")
  return header


def _next_line(lines: Iterator[str]) -> str:
  try:
    return next(lines).rstrip("\n")
  except StopIteration:
    raise ModelFormatError("model file is truncated") from None


def _parse_floats(fields: List[str], expected: int, what: str) -> List[float]:
  if len(fields) != expected:
    raise ModelFormatError(f"{what}: expected {expected} values, got {len(fields)}")
  try:
    return [float(x) for x in fields]
  except ValueError as e:
    raise ModelFormatError(f"{what}: {e}") from e


def _read_matrix(lines: Iterator[str], n_rows: int, n_cols: int, what: str) -> np.ndarray:
  matrix = np.empty((n_rows, n_cols), dtype=np.float32)
  for i in range(n_rows):
    matrix[i] = _parse_floats(_next_line(lines).split(), n_cols, f"{what} line {i}")
  return matrix


def load_model(path: str) -> ParsingModel:
  """
  reads a model file. the returned model still needs inference.initialize()
  before parsing. raises ModelFormatError on any malformed or truncated input.
  """
  logger.info("loading model file: %s", path)
  with _open(path, "r") as f:
    lines = iter(f)
    header = _read_header(lines)
    n_dict, n_pos, n_label = header["dict"], header["pos"], header["label"]
    embed_size, hidden_size = header["embeddingSize"], header["hiddenSize"]
    n_tokens, n_precomputed = header["numTokens"], header["preComputed"]
    logger.info("header: %s", header)

    if n_tokens != N_FEATURES:
      raise ModelFormatError(f"numTokens={n_tokens}, this parser extracts {N_FEATURES}")
    if n_label < 2:
      raise ModelFormatError("label dictionary needs NULL and the root label")

    tokens = []
    embeddings = np.empty((n_dict + n_pos + n_label, embed_size), dtype=np.float32)
    for i in range(embeddings.shape[0]):
      fields = _next_line(lines).split()
      if not fields:
        raise ModelFormatError(f"empty dictionary line {i}")
      tokens.append(fields[0])
      embeddings[i] = _parse_floats(fields[1:], embed_size, f"embedding {fields[0]!r}")

    w1 = _read_matrix(lines, embed_size * n_tokens, hidden_size, "W1")
    b1 = _read_matrix(lines, 1, hidden_size, "b1")[0]
    w2 = _read_matrix(lines, hidden_size, 2 * n_label - 1, "W2")

    precomputed: List[int] = []
    while len(precomputed) < n_precomputed:
      try:
        precomputed.extend(int(x) for x in _next_line(lines).split())
      except ValueError as e:
        raise ModelFormatError(f"bad precomputed id: {e}") from e
    if len(precomputed) != n_precomputed:
      raise ModelFormatError(
        f"expected {n_precomputed} precomputed ids, got {len(precomputed)}"
      )
    vocab_size = embeddings.shape[0]
    if any(k < 0 or k >= vocab_size * n_tokens for k in precomputed):
      raise ModelFormatError("precomputed id out of range")

  try:
    dicts = make_dictionaries(
      tokens[:n_dict], tokens[n_dict : n_dict + n_pos], tokens[n_dict + n_pos :]
    )
  except ValueError as e:
    raise ModelFormatError(str(e)) from e

  params = {
    "embeddings": jnp.asarray(embeddings),
    "hidden": {"kernel": jnp.asarray(w1), "bias": jnp.asarray(b1)},
    "output": {"kernel": jnp.asarray(w2)},
  }
  return ParsingModel(
    dictionaries=dicts,
    params=params,
    precomputed=tuple(precomputed),
    embed_size=embed_size,
    hidden_size=hidden_size,
  )


def read_embedding_file(path: str, embed_size: int) -> Tuple[Dict[str, int], np.ndarray]:
  """
  reads `<token> <floats>` lines. the dimension is taken from the first line;
  a mismatch with `embed_size` is reported but not fatal.
  returns (token -> row, matrix).
  """
  with _open(path, "r") as f:
    rows = [line.split() for line in f if line.strip()]

  if not rows:
    logger.warning("embedding file %s is empty", path)
    return {}, np.zeros((0, embed_size), dtype=np.float32)

  dim = len(rows[0]) - 1
  logger.info("embedding file %s: #words = %d, dim = %d", path, len(rows), dim)
  if dim != embed_size:
    logger.warning("embedding dimension mismatch: file has %d, configured %d", dim, embed_size)

  embed_id: Dict[str, int] = {}
  embeddings = np.empty((len(rows), dim), dtype=np.float32)
  for i, sp in enumerate(rows):
    if len(sp) != dim + 1:
      raise ValueError(f"{path}: line {i + 1} has {len(sp) - 1} values, expected {dim}")
    embed_id[sp[0]] = i
    embeddings[i] = [float(x) for x in sp[1:]]
  return embed_id, embeddings
