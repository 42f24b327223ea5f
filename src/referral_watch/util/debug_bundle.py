from __future__ import annotations

import json
import time
import zipfile
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence


# Never shipped in a bundle, even when they sit inside the debug directory.
_SECRET_NAMES = (".env", "config.yaml", "config.yml")
_SECRET_SUFFIXES = (".db", ".db-wal", ".db-shm", ".sqlite", ".sqlite3", ".bak")


def _is_secret(path: Path) -> bool:
    name = path.name.lower()
    if ".corrupt-" in name:
        return True
    return name in _SECRET_NAMES or name.startswith(".env") or name.endswith(_SECRET_SUFFIXES)


def create_debug_bundle(
    *,
    debug_dir: str,
    log_file: str,
    out_dir: str = "data",
    runs: Optional[Sequence[dict[str, Any]]] = None,
    extra_paths: Optional[Iterable[str]] = None,
) -> Path:
    """
    Zip screenshots/HTML captured on failures, the log file and a summary of recent runs.

    Excludes secrets: dotenv/YAML config and the SQLite state (it holds backup codes).
    """
    out_root = Path(out_dir)
    out_root.mkdir(parents=True, exist_ok=True)
    out_path = out_root / f"referral_watch_debug_{time.strftime('%Y%m%d_%H%M%S')}.zip"

    def _add_file(z: zipfile.ZipFile, file_path: Path, arcname: str) -> None:
        if _is_secret(file_path):
            return
        try:
            if file_path.is_file():
                z.write(file_path, arcname=arcname)
        except OSError:
            # A capture can be rotated away while bundling.
            return

    def _add_tree(z: zipfile.ZipFile, root: Path, prefix: Path) -> None:
        for p in sorted(root.rglob("*")):
            if p.is_file():
                _add_file(z, p, arcname=str(prefix / p.relative_to(root)))

    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as z:
        log = Path(log_file)
        _add_file(z, log, arcname=log.name)

        dbg = Path(debug_dir)
        if dbg.is_dir():
            _add_tree(z, dbg, Path("debug"))

        if runs is not None:
            z.writestr("runs.json", json.dumps(list(runs), indent=2, default=str))

        for raw in extra_paths or ():
            p = Path(raw)
            if p.is_file():
                _add_file(z, p, arcname=str(Path("extra") / p.name))
            elif p.is_dir():
                _add_tree(z, p, Path("extra") / p.name)

    return out_path
