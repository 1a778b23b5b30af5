"""Operation registry: name -> description, parameter model and handler."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

import duckdb
from mcp.types import Tool
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from querygate import errors
from querygate.mcp.models import OperationOutcome

log = logging.getLogger(__name__)

Handler = Callable[[duckdb.DuckDBPyConnection, Any], OperationOutcome]


@dataclass(frozen=True)
class Operation:
    """A named, schema-described unit of work the dispatcher can invoke."""

    name: str
    description: str
    params_model: type[BaseModel]
    handler: Handler

    def input_schema(self) -> dict[str, Any]:
        """
        Return the JSON schema advertised for this operation's arguments.

        Returns
        -------
        dict[str, Any]
            JSON schema using wire (alias) field names.
        """
        schema = self.params_model.model_json_schema(by_alias=True)
        schema.setdefault("properties", {})
        schema.pop("title", None)
        return schema

    def validate(self, arguments: Mapping[str, Any] | None) -> BaseModel:
        """
        Convert a loosely-typed argument mapping into the operation's model.

        Returns
        -------
        BaseModel
            Validated parameters.

        Raises
        ------
        errors.ValidationError
            If required parameters are missing or have the wrong shape.
        """
        if arguments is not None and not isinstance(arguments, Mapping):
            raise errors.invalid_params(
                self.name,
                [{"loc": (), "msg": "arguments must be an object", "type": "model_type"}],
            )
        try:
            return self.params_model.model_validate(dict(arguments or {}))
        except PydanticValidationError as exc:
            issues = exc.errors(include_url=False, include_context=False, include_input=False)
            raise errors.invalid_params(self.name, [dict(issue) for issue in issues]) from exc

    def describe(self) -> Tool:
        """
        Describe the operation for ``tools/list``.

        Returns
        -------
        Tool
            Name, description and input schema.
        """
        return Tool(name=self.name, description=self.description, inputSchema=self.input_schema())


@dataclass
class OperationRegistry:
    """
    Registry of operations keyed by name, in registration order.

    Operations are registered during startup; ``seal`` freezes the registry
    before the transport is attached.
    """

    _operations: dict[str, Operation] = field(default_factory=dict)
    _sealed: bool = False

    def register(self, operation: Operation) -> Operation:
        """
        Add an operation.

        Returns
        -------
        Operation
            The registered operation.

        Raises
        ------
        RuntimeError
            If the registry has been sealed.
        ValueError
            If an operation with the same name already exists.
        """
        if self._sealed:
            message = f"Registry is sealed; cannot register {operation.name}"
            raise RuntimeError(message)
        if operation.name in self._operations:
            message = f"Operation already registered: {operation.name}"
            raise ValueError(message)
        self._operations[operation.name] = operation
        log.debug("Registered operation %s", operation.name)
        return operation

    def seal(self) -> OperationRegistry:
        """
        Freeze the registry.

        Returns
        -------
        OperationRegistry
            ``self`` for chaining.
        """
        self._sealed = True
        return self

    @property
    def sealed(self) -> bool:
        """Whether registrations are closed."""
        return self._sealed

    def get(self, name: str) -> Operation:
        """
        Retrieve an operation by name.

        Returns
        -------
        Operation
            The registered operation.

        Raises
        ------
        errors.UnknownOperationError
            If no operation has that name.
        """
        operation = self._operations.get(name)
        if operation is None:
            raise errors.unknown_operation(name)
        return operation

    def tools(self) -> list[Tool]:
        """
        Describe every operation for ``tools/list``.

        Returns
        -------
        list[Tool]
            Tool descriptors in registration order.
        """
        return [operation.describe() for operation in self._operations.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._operations

    def __iter__(self) -> Iterator[str]:
        return iter(self._operations)

    def __len__(self) -> int:
        return len(self._operations)
