from typing import NamedTuple, Sequence

import flax.linen as nn
import jax
import jax.numpy as jnp
import numpy as np

from config import N_FEATURES


def symmetric_uniform(scale: float):
  """initializer drawing from U[-scale, scale]."""

  def init(key, shape, dtype=jnp.float32):
    return jax.random.uniform(key, shape, dtype, minval=-scale, maxval=scale)

  return init


class ParserModel(nn.Module):
  """
  flax implementation of the feed-forward transition scorer:
  embeddings -> hidden affine -> cube -> dropout -> output (no bias).
  """

  vocab_size: int
  n_classes: int
  embed_size: int = 50
  hidden_size: int = 200
  n_features: int = N_FEATURES
  dropout_rate: float = 0.5
  init_range: float = 0.01

  @nn.compact
  def __call__(self, x, train: bool = True):
    """
    x: (batch_size, n_features) - global dictionary ids
    returns raw transition scores (batch_size, n_classes)
    """
    embeddings = self.param(
      "embeddings",
      symmetric_uniform(self.init_range),
      (self.vocab_size, self.embed_size),
    )

    # select embeddings and flatten: (batch, n_features * embed_size)
    x = embeddings[x].reshape((x.shape[0], -1))

    x = nn.Dense(
      features=self.hidden_size,
      kernel_init=symmetric_uniform(self.init_range),
      bias_init=symmetric_uniform(self.init_range),
      name="hidden",
    )(x)
    x = x * x * x
    # inverted dropout: surviving units are rescaled by 1 / (1 - rate)
    x = nn.Dropout(rate=self.dropout_rate, deterministic=not train)(x)

    return nn.Dense(
      features=self.n_classes,
      use_bias=False,
      kernel_init=symmetric_uniform(self.init_range),
      name="output",
    )(x)


class PrecomputeCache(NamedTuple):
  """
  cached hidden-layer contributions of frequent (id, slot) pairs.
  lookup[id * n_features + slot] is a row of `saved`, or -1 when not cached.
  """

  lookup: jnp.ndarray  # (vocab_size * n_features,) int32
  saved: jnp.ndarray  # (n_cached, hidden_size)
  n_features: int = N_FEATURES


def build_precompute_cache(
  params, precomputed: Sequence[int], n_features: int = N_FEATURES
) -> PrecomputeCache:
  """
  computes E[id] @ W1[slot block] for every precomputed key. always returns a
  fresh cache; callers swap it in whole.
  """
  embeddings = params["embeddings"]
  kernel = params["hidden"]["kernel"]
  vocab_size, embed_size = embeddings.shape
  blocks = kernel.reshape((n_features, embed_size, -1))

  keys = np.unique(np.asarray(precomputed, dtype=np.int64))
  if keys.size and (keys[0] < 0 or keys[-1] >= vocab_size * n_features):
    raise ValueError("precomputed key out of range for this vocabulary")
  slots = keys % n_features

  lookup = np.full(vocab_size * n_features, -1, dtype=np.int32)
  rows = []
  n_cached = 0
  for s in range(n_features):
    sel = keys[slots == s]
    if sel.size == 0:
      continue
    rows.append(embeddings[(sel // n_features).astype(np.int32)] @ blocks[s])
    lookup[sel] = np.arange(n_cached, n_cached + sel.size, dtype=np.int32)
    n_cached += sel.size

  if rows:
    saved = jnp.concatenate(rows, axis=0)
  else:
    saved = jnp.zeros((0, kernel.shape[1]), dtype=kernel.dtype)
  return PrecomputeCache(lookup=jnp.asarray(lookup), saved=saved, n_features=n_features)


def hidden_preactivation(params, features, lookup=None, saved=None):
  """
  W1 . [E[x_1]; ...; E[x_48]] + b1 for a batch of feature vectors.
  with a cache, cached (id, slot) pairs are summed from `saved` and only the
  remaining embeddings go through W1.
  """
  embeddings = params["embeddings"]
  kernel = params["hidden"]["kernel"]
  bias = params["hidden"]["bias"]
  batch_size, n_features = features.shape
  x = embeddings[features]

  if lookup is None:
    return x.reshape((batch_size, -1)) @ kernel + bias

  rows = lookup[features * n_features + jnp.arange(n_features, dtype=features.dtype)]
  hit = rows >= 0
  # misses read the zero row appended after the cached ones
  padded = jnp.concatenate([saved, jnp.zeros((1, saved.shape[1]), saved.dtype)], axis=0)
  cached = jnp.sum(padded[jnp.where(hit, rows, saved.shape[0])], axis=1)

  x = jnp.where(hit[..., None], 0.0, x)
  return cached + x.reshape((batch_size, -1)) @ kernel + bias


@jax.jit
def _scores(params, features, lookup=None, saved=None):
  hidden = hidden_preactivation(params, features, lookup, saved)
  hidden = hidden * hidden * hidden
  return hidden @ params["output"]["kernel"]


def compute_scores(params, features, cache: PrecomputeCache = None) -> np.ndarray:
  """
  inference-mode scores (no dropout) for a batch of feature vectors.
  the cache only changes speed, never the result.
  """
  features = np.atleast_2d(np.asarray(features, dtype=np.int32))
  if cache is None:
    return np.asarray(_scores(params, features))
  if cache.n_features != features.shape[1]:
    raise ValueError(
      f"cache built for {cache.n_features} features, got {features.shape[1]}"
    )
  return np.asarray(_scores(params, features, cache.lookup, cache.saved))
