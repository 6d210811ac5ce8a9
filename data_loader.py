import os
import logging
from collections import Counter
from typing import Iterable, List, Sequence, Tuple

from dotenv import load_dotenv

from config import UNKNOWN, NULL, ROOT
from schema import DependencyTree, Dictionaries, Sentence

load_dotenv()

logger = logging.getLogger(__name__)


def resolve_path(file_name: str) -> str:
  """relative names are looked up under $DATA_PATH (default ./data)."""
  data_path = os.getenv("DATA_PATH", "./data")
  return os.path.join(data_path, file_name)


def load_conll_data(
  file_name: str, lowercase: bool = False
) -> Tuple[List[Sentence], List[DependencyTree]]:
  """
  robust CoNLL(-U-ish) loader.
  - splits on any whitespace (tabs OR spaces)
  - flushes last sentence even if file doesn't end with a blank line
  - skips multiword tokens like 1-2 and empty nodes like 1.1
  """
  full_path = resolve_path(file_name)

  sentences: List[Sentence] = []
  trees: List[DependencyTree] = []
  word: List[str] = []
  pos: List[str] = []
  head: List[int] = []
  label: List[str] = []

  def flush():
    nonlocal word, pos, head, label
    if word:
      sentences.append(Sentence(tuple(word), tuple(pos)))
      trees.append(DependencyTree.from_conll(head, label))
      word, pos, head, label = [], [], [], []

  with open(full_path, "r", encoding="utf-8") as f:
    for line_no, line in enumerate(f, 1):
      line = line.strip()
      if not line:
        flush()
        continue
      if line.startswith("#"):
        continue

      sp = line.split()
      if len(sp) < 8:
        raise ValueError(f"{full_path}:{line_no}: expected at least 8 columns")

      tok_id = sp[0]
      if "-" in tok_id or "." in tok_id:
        continue

      word.append(sp[1].lower() if lowercase else sp[1])
      pos.append(sp[4])
      head.append(int(sp[6]) if sp[6] != "_" else -1)
      label.append(sp[7])

  flush()
  logger.info("loaded %d sentences from %s", len(sentences), full_path)
  return sentences, trees


def write_conll(
  file_name: str, sentences: Sequence[Sentence], trees: Sequence[DependencyTree]
) -> None:
  """
  writes predicted trees in CoNLL-X layout (word, POS, head, label filled in).
  like model files, the path is taken as given, not under $DATA_PATH.
  """
  directory = os.path.dirname(file_name)
  if directory:
    os.makedirs(directory, exist_ok=True)
  with open(file_name, "w", encoding="utf-8") as f:
    for sent, tree in zip(sentences, trees):
      for k in range(1, sent.n + 1):
        cols = [
          str(k),
          sent.get_word(k),
          "_",
          sent.get_pos(k),
          sent.get_pos(k),
          "_",
          str(tree.get_head(k)),
          tree.get_label(k),
          "_",
          "_",
        ]
        f.write("\t".join(cols) + "\n")
      f.write("\n")
  logger.info("wrote %d parsed sentences to %s", len(trees), file_name)


def tree_stats(name: str, trees: Sequence[DependencyTree]) -> Tuple[int, int, int]:
  """logs and returns (#trees, #ill-formed trees, #non-projective trees)."""
  n_non_trees = 0
  n_non_projective = 0
  n_tokens = 0
  for tree in trees:
    n_tokens += tree.n
    if not tree.is_tree():
      n_non_trees += 1
    elif not tree.is_projective():
      n_non_projective += 1
  logger.info(
    "%s: #trees: %d, #tokens: %d, #non-trees: %d, #non-projective: %d",
    name,
    len(trees),
    n_tokens,
    n_non_trees,
    n_non_projective,
  )
  return len(trees), n_non_trees, n_non_projective


def generate_dict(keys: Iterable[str], cutoff: int = 1) -> List[str]:
  """keys with frequency >= cutoff, most frequent first (ties in first-seen order)."""
  count = Counter(keys)
  return [k for k, c in count.most_common() if c >= cutoff]


def make_dictionaries(
  words: Sequence[str], pos: Sequence[str], labels: Sequence[str]
) -> Dictionaries:
  """
  assigns global ids by concatenation: words, then POS, then labels.
  words / pos must start with UNKNOWN, NULL, ROOT; labels with NULL, root label.
  """
  if tuple(words[:3]) != (UNKNOWN, NULL, ROOT):
    raise ValueError(f"word dictionary must start with {UNKNOWN}, {NULL}, {ROOT}")
  if tuple(pos[:3]) != (UNKNOWN, NULL, ROOT):
    raise ValueError(f"POS dictionary must start with {UNKNOWN}, {NULL}, {ROOT}")
  if len(labels) < 2 or labels[0] != NULL:
    raise ValueError(f"label dictionary must start with {NULL} and the root label")

  offset = 0
  word2id = {w: offset + i for i, w in enumerate(words)}
  offset += len(words)
  pos2id = {p: offset + i for i, p in enumerate(pos)}
  offset += len(pos)
  label2id = {ll: offset + i for i, ll in enumerate(labels)}

  if len(word2id) != len(words) or len(pos2id) != len(pos) or len(label2id) != len(labels):
    raise ValueError("dictionary entries must be unique")

  return Dictionaries(
    words=tuple(words),
    pos=tuple(pos),
    labels=tuple(labels),
    word2id=word2id,
    pos2id=pos2id,
    label2id=label2id,
  )


def build_dictionaries(
  sentences: Sequence[Sentence], trees: Sequence[DependencyTree], word_cutoff: int = 1
) -> Dictionaries:
  """
  builds word (frequency-filtered), POS and label dictionaries from the
  training corpus. the root label becomes the first real label.
  """
  root_labels = Counter()
  arc_labels = []
  for tree in trees:
    for k in range(1, tree.n + 1):
      if tree.heads[k] == 0:
        root_labels[tree.labels[k]] += 1
        root_label = tree.labels[k]
      else:
        arc_labels.append(tree.labels[k])

  if not root_labels:
    raise ValueError("no token attached to ROOT in the training trees")
  if len(root_labels) > 1:
    logger.warning("more than one root label: %s", dict(root_labels))

  reserved = (UNKNOWN, NULL, ROOT)
  words = list(reserved) + [
    w
    for w in generate_dict((w for sent in sentences for w in sent.words), word_cutoff)
    if w not in reserved
  ]
  pos = list(reserved) + [
    t for t in generate_dict(t for sent in sentences for t in sent.tags) if t not in reserved
  ]
  labels = [NULL, root_label] + [
    ll for ll in generate_dict(arc_labels) if ll != root_label
  ]

  dicts = make_dictionaries(words, pos, labels)
  logger.info("root label: %s", root_label)
  logger.info(
    "#words: %d, #POS: %d, #labels: %d", len(dicts.words), len(dicts.pos), len(dicts.labels)
  )
  return dicts
