from enum import IntEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class AdminLevel(IntEnum):
    USER = 0
    ADMIN = 1
    SUPER_ADMIN = 2


class WireModel(BaseModel):
    """Base for anything that crosses the wire: camelCase out, either case in."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class ErrorDetail(BaseModel):
    code: str
    message: str
    status: int


class ErrorResponse(BaseModel):
    error: ErrorDetail
    details: Optional[object] = None
