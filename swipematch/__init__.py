"""Importable entry points for running SwipeMatch under an ASGI server."""

from __future__ import annotations

from app.main import app, create_app

__all__ = ["app", "create_app", "main"]


def main() -> None:
    from .__main__ import main as _main

    _main()
