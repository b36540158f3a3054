"""macOS variant.

pf support is not implemented; every operation reports NOT_SUPPORTED so
callers can tell "unsupported" apart from "failed".
"""
from __future__ import annotations

from .base import UnsupportedFirewall


class MacFirewall(UnsupportedFirewall):
    # TODO: drive pfctl tables (pfctl -t <table> -T add/delete) once an anchor layout is settled
    platform_name = "macos"

    def __init__(self, **kwargs) -> None:
        super().__init__(platform_name=self.platform_name)
