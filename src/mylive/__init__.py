"""MyLive: a wall of the live and upcoming broadcasts of tracked YouTube channels.

The engine, gateway and models import without the web stack; FastAPI is only
loaded when :func:`create_app` is called.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fastapi import FastAPI

    from .gateway import RemoteStatusGateway

__all__ = ["__version__", "create_app"]

try:
    __version__ = version("mylive")
except PackageNotFoundError:  # source checkout without an installed distribution
    __version__ = "0.0.0"


def create_app(
    *,
    gateway: "RemoteStatusGateway | None" = None,
    poll_interval_seconds: float | None = None,
) -> "FastAPI":
    """Build the web application; see :func:`mylive.web.create_app`."""

    from .web import create_app as build_app

    return build_app(gateway=gateway, poll_interval_seconds=poll_interval_seconds)
