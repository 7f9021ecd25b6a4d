"""Websocket terminal message models."""

from typing import Literal, Optional, Union

from pydantic import BaseModel, Field


class ResizeData(BaseModel):
    cols: int = Field(..., ge=1, le=1000)
    rows: int = Field(..., ge=1, le=1000)


class ControlData(BaseModel):
    signal: Literal["SIGINT", "SIGTERM", "SIGKILL", "SIGHUP", "SIGQUIT"]


class TerminalMessage(BaseModel):
    """One JSON frame exchanged over the terminal websocket."""

    type: Literal["input", "output", "resize", "control"]
    data: Union[ResizeData, ControlData, str]
    timestamp: Optional[int] = None
