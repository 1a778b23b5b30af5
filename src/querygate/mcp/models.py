"""Typed operation parameters and handler outcomes."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from mcp.types import CallToolResult, TextContent
from pydantic import BaseModel, ConfigDict, Field

from querygate.errors import ProblemError


class NoParams(BaseModel):
    """Parameter model for operations that take no arguments."""

    model_config = ConfigDict(extra="ignore")


class QueryParams(BaseModel):
    """Arguments for the read-only query operation."""

    model_config = ConfigDict(extra="ignore")

    sql: str = Field(min_length=1, description="SQL query to execute (read-only)")


class DescribeTableParams(BaseModel):
    """Arguments for the describe-table operation."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    table_name: str = Field(
        alias="tableName",
        min_length=1,
        description="Name of the table to describe",
    )


def render_json(payload: object) -> str:
    """
    Pretty-print result data for a text content block.

    Values JSON cannot represent natively (dates, decimals, UUIDs, blobs) are
    rendered with ``str``.

    Returns
    -------
    str
        Indented JSON document.
    """
    return json.dumps(payload, indent=2, default=str)


@dataclass(frozen=True)
class OperationSuccess:
    """Successful handler outcome: structured data or a plain message."""

    data: Any = None
    text: str | None = None

    def render(self) -> str:
        """
        Return the text placed in the single content block.

        Returns
        -------
        str
            The message when set, otherwise the pretty-printed data.
        """
        if self.text is not None:
            return self.text
        return render_json(self.data)

    def to_result(self) -> CallToolResult:
        """
        Wrap the outcome in the wire result shape.

        Returns
        -------
        CallToolResult
            Result with exactly one text content block.
        """
        return CallToolResult(
            content=[TextContent(type="text", text=self.render())],
            isError=False,
        )


@dataclass(frozen=True)
class OperationFailure:
    """Expected handler failure, such as a statement the database rejected."""

    error: ProblemError


OperationOutcome = OperationSuccess | OperationFailure
