import os
import logging
from typing import NamedTuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# reserved dictionary entries
UNKNOWN = "-UNKNOWN-"
NULL = "-NULL-"
ROOT = "-ROOT-"

# 18 word + 18 POS + 12 label positions
N_FEATURES = 48

# gold POS tags excluded from the "noPunc" scores
PUNCTUATION_TAGS = frozenset(["''", ",", ".", ":", "``"])

ENV_PREFIX = "NNDEP_"


class ParserConfig(NamedTuple):
  """hyperparameters for training and parsing."""

  word_cutoff: int = 1
  init_range: float = 0.01
  max_iter: int = 20000
  batch_size: int = 10000
  ada_alpha: float = 0.01
  ada_eps: float = 1e-6
  reg_parameter: float = 1e-8
  dropout_rate: float = 0.5
  hidden_size: int = 200
  embed_size: int = 50
  num_precomputed: int = 100000
  eval_per_iter: int = 100
  decode_batch_size: int = 1000
  single_root: bool = False
  seed: int = 0


def _cast(field: str, raw: str):
  default = ParserConfig._field_defaults[field]
  if isinstance(default, bool):
    return raw.strip().lower() in ("yes", "true", "t", "1", "y")
  try:
    return type(default)(raw)
  except ValueError as e:
    raise ValueError(f"invalid value for {ENV_PREFIX}{field.upper()}: {raw!r}") from e


def load_config(**overrides) -> ParserConfig:
  """
  defaults, then NNDEP_<FIELD> environment variables (a .env file is honored),
  then explicit keyword overrides.
  """
  load_dotenv()
  values = {}
  for field in ParserConfig._fields:
    raw = os.getenv(ENV_PREFIX + field.upper())
    if raw is not None:
      values[field] = _cast(field, raw)

  unknown = set(overrides) - set(ParserConfig._fields)
  if unknown:
    raise ValueError(f"unknown config fields: {sorted(unknown)}")
  values.update(overrides)

  config = ParserConfig(**values)
  if not 0.0 <= config.dropout_rate < 1.0:
    raise ValueError(f"dropout_rate must be in [0, 1): {config.dropout_rate}")
  if config.embed_size <= 0 or config.hidden_size <= 0:
    raise ValueError("embed_size and hidden_size must be positive")
  logger.debug("config: %s", config)
  return config
