"""Top-level package for the prompt relay server."""

from __future__ import annotations

from typing import Any


def build_http_app(*args: Any, **kwargs: Any) -> Any:
    """Lazily import and build the HTTP app to keep ``import prompt_relay`` cheap."""
    from .http import build_http_app as _build_http_app

    return _build_http_app(*args, **kwargs)


__all__ = ["build_http_app"]
