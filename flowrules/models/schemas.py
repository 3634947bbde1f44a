"""
Pydantic Models and Schemas
===========================

Core data models for compiler diagnostics, the controller's policy triple
(rules, capabilities, tags) and compile/decompile results.
"""

from typing import Optional, List, Dict, Any
from enum import Enum
import json

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Enums
class Severity(str, Enum):
    """Diagnostic severity."""
    ERROR = "error"
    WARNING = "warning"


class DiagnosticCategory(str, Enum):
    """Compiler stage a diagnostic originates from."""
    LEX = "lex"
    SYNTAX = "syntax"
    SEMANTIC = "semantic"
    SCHEMA = "schema"


# Diagnostics
class Diagnostic(BaseModel):
    """Position-tagged message produced by a compiler stage."""
    model_config = ConfigDict(frozen=True)

    severity: Severity = Field(..., description="error or warning")
    line: int = Field(..., ge=0, description="1-based source line (0 when not positional)")
    column: int = Field(..., ge=0, description="1-based source column (0 when not positional)")
    message: str = Field(..., description="Human readable message")
    code: str = Field(..., description="Namespaced code, e.g. semantic.forward-reference")

    @property
    def category(self) -> DiagnosticCategory:
        return DiagnosticCategory(self.code.split(".", 1)[0])

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR

    def format(self) -> str:
        """Render as ``line:column: severity [code] message``."""
        return f"{self.line}:{self.column}: {self.severity.value} [{self.code}] {self.message}"


# Policy Models
class PolicyBundle(BaseModel):
    """Rule, capability and tag arrays in the controller's JSON schema."""
    rules: List[Dict[str, Any]] = Field(default_factory=list, description="Ordered rule objects")
    capabilities: List[Dict[str, Any]] = Field(
        default_factory=list, description="Capability declarations"
    )
    tags: List[Dict[str, Any]] = Field(default_factory=list, description="Tag declarations")

    @field_validator("rules", "capabilities", "tags", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        """Controllers omit empty arrays as null."""
        return [] if v is None else v

    @classmethod
    def from_json(cls, text: str) -> "PolicyBundle":
        """Load the ``{rules, capabilities, tags}`` triple from JSON text."""
        return cls.model_validate(json.loads(text))

    def to_json(self, indent: Optional[int] = 2) -> str:
        """Render the triple as JSON text."""
        return json.dumps(self.model_dump(), indent=indent)


# Results
class CompileResult(BaseModel):
    """Result of compiling DSL source."""
    success: bool = Field(..., description="Whether compilation produced a bundle")
    bundle: Optional[PolicyBundle] = Field(None, description="Compiled policy")
    diagnostics: List[Diagnostic] = Field(default_factory=list, description="All diagnostics")
    processing_time: Optional[float] = Field(None, description="Compile time in seconds")

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.is_error]

    @property
    def warnings(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if not d.is_error]


class DecompileResult(BaseModel):
    """Result of decompiling controller JSON."""
    source: str = Field(..., description="Reconstructed DSL source")
    diagnostics: List[Diagnostic] = Field(default_factory=list, description="Schema warnings")
    processing_time: Optional[float] = Field(None, description="Decompile time in seconds")
