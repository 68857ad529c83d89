"""Workspace file helpers."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write *payload* as JSON through a sibling temp file and ``os.replace``.

    The temp name ends in ``.tmp`` so a sync that races the write skips it.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fh = tempfile.NamedTemporaryFile("wb", dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False)
    tmp = Path(fh.name)
    try:
        with fh:
            fh.write(json.dumps(payload, indent=2).encode())
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
