"""Pydantic request/response models for API endpoints."""

from typing import Any

from pydantic import BaseModel

from storyline.models import CheckpointStatus


class OpenSession(BaseModel):
    story: dict[str, Any]
    group_selected: bool = True


class MessageBody(BaseModel):
    text: str
    speaker: str = "Player"
    is_user: bool = True
    wait: bool = True


class RoleBody(BaseModel):
    name: str
    new_generation: bool = True


class ActivateBody(BaseModel):
    index: int | None = None
    delta: int | None = None
    reset: bool = False


class StatusBody(BaseModel):
    index: int
    status: CheckpointStatus


class EvaluateBody(BaseModel):
    wait: bool = True


class ChatContextBody(BaseModel):
    group_selected: bool = True
    force: bool = False
