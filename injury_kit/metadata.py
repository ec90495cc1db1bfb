from __future__ import annotations

import ast
from pathlib import Path
from typing import Dict, Optional, Tuple, Union


def _ordered(names: Dict[int, str], source: str) -> Tuple[str, ...]:
    if not names:
        raise ValueError(f"No class names found in {source}")
    ids = sorted(names)
    if ids != list(range(len(ids))):
        raise ValueError(f"Class ids in {source} must be contiguous from 0, got {ids}")
    return tuple(names[i] for i in ids)


def load_class_names(metadata_path: Union[str, Path]) -> Tuple[str, ...]:
    """
    Read class names, ordered by id, from an export `metadata.yaml`:

        names:
          0: 1st degree burn
          1: 2nd degree burn
          ...

    Only the `names:` block is parsed; the rest of the file is ignored.
    """

    names: Dict[int, str] = {}
    in_names = False

    with open(metadata_path, "r", encoding="utf-8") as f:
        for raw in f:
            if not raw.strip() or raw.lstrip().startswith("#"):
                continue
            line = raw.strip()
            if line == "names:":
                in_names = True
                continue
            if not in_names:
                continue
            # A top-level key ends the block.
            if not raw[0].isspace():
                break

            if ":" not in line:
                continue
            left, right = line.split(":", 1)
            left = left.strip()
            if not left.isdigit():
                continue
            names[int(left)] = right.strip().strip("'").strip('"')

    return _ordered(names, str(metadata_path))


def parse_names_metadata(value: Optional[str]) -> Optional[Tuple[str, ...]]:
    """
    Parse the `names` entry exporters embed in model metadata, e.g.
    "{0: 'abrasion', 1: 'bruise'}". Returns None when absent or unreadable.
    """

    if not value:
        return None
    try:
        parsed = ast.literal_eval(value)
    except (ValueError, SyntaxError):
        return None

    if isinstance(parsed, dict):
        try:
            return _ordered({int(k): str(v) for k, v in parsed.items()}, "model metadata")
        except ValueError:
            return None
    if isinstance(parsed, (list, tuple)) and parsed:
        return tuple(str(v) for v in parsed)
    return None
