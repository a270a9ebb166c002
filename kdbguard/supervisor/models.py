from pydantic import BaseModel
from typing import Optional


class StatusResponse(BaseModel):
    status: str
    state: str
    port: int
    executable: str
    pid: Optional[int] = None
    self_managed: bool = False


class PortResponse(BaseModel):
    port: int


class MessageResponse(BaseModel):
    message: str


class CommandResponse(BaseModel):
    status: str
    pid: Optional[int] = None
    self_managed: bool = False
