"""Shared Pydantic base class with consistent configuration."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class TypedBaseModel(BaseModel):
    """Centralized base ensuring every record is immutable and strict.

    Lifecycle records are passed by value between components and replaced,
    never edited, on each transition. Unknown keys are rejected so a ledger
    written by a newer schema fails loudly instead of dropping fields.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")
