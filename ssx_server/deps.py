from __future__ import annotations

from fastapi import Request

from .services.auth import SSXServer


def get_ssx(request: Request) -> SSXServer:
    """Dependency returning the SSXServer built by create_app()."""
    return request.app.state.ssx
