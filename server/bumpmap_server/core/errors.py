"""Errors raised inside the server core."""

from __future__ import annotations


class MalformedMessage(ValueError):
    """An inbound live message could not be parsed or is missing fields.

    The hub answers with an ``error`` envelope to the sender only; the
    connection stays open.
    """


class ConnectionLost(Exception):
    """A send to a live connection failed or timed out."""
