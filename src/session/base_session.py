# src/session/base_session.py - v1
"""Session collaborator interface consumed by the request executor."""

from __future__ import annotations

from abc import ABC, abstractmethod


class BaseSession(ABC):
    """Source of the current bearer token and target of forced sign-out."""

    @abstractmethod
    def current_token(self) -> str | None:
        """Token to send on the next request, or None when signed out."""

    @abstractmethod
    def sign_out(self) -> None:
        """Drop credentials after the server rejected them."""
