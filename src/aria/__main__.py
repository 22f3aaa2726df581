"""Aria CLI bootstrap."""

from __future__ import annotations

from aria.cli import app

if __name__ == "__main__":
    app()
