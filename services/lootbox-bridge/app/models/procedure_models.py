# services/lootbox-bridge/app/models/procedure_models.py
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ParamType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"


class ParameterSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ParamType = ParamType.STRING
    is_array: bool = False
    is_optional: bool = False

    def json_schema(self) -> Dict[str, Any]:
        if self.is_array:
            return {"type": "array", "items": {"type": self.type.value}}
        return {"type": self.type.value}


class RemoteProcedureDescriptor(BaseModel):
    """
    One callable procedure exposed by the lootbox server, as parsed from /types.
    """
    model_config = ConfigDict(frozen=True)

    namespace: str
    name: str
    parameters: Dict[str, ParameterSpec] = Field(default_factory=dict)

    @property
    def method(self) -> str:
        return f"{self.namespace}.{self.name}"

    @property
    def required(self) -> List[str]:
        return [pname for pname, spec in self.parameters.items() if not spec.is_optional]


class ServerHealth(BaseModel):
    healthy: bool
    schema_compatible: bool = False
    error: Optional[str] = None
    version: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.healthy and self.schema_compatible
