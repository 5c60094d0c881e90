"""Launcher for the community exchange bot.

Puts the local ``src`` directory on ``sys.path`` so ``python bot.py`` works
from a checkout without installing the package first.
"""
from __future__ import annotations

from pathlib import Path
import sys


def _ensure_src_on_path() -> None:
    src_dir = Path(__file__).resolve().parent / "src"
    if src_dir.is_dir() and str(src_dir) not in sys.path:
        sys.path.insert(0, str(src_dir))


_ensure_src_on_path()
from forum_exchange.bot import run_bot


if __name__ == "__main__":
    run_bot()
