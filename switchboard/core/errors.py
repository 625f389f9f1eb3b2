# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Error taxonomy for Switchboard.

Hierarchy:

- SwitchboardError (base)
  - GraphDefinitionError (structural misconfiguration, raised by compile())
  - StateSchemaError (undeclared state field, invalid message sequence)
  - RoutingError (router returned a key with no matching edge)
  - RecursionLimitError (run exceeded its step guard)
  - ClassificationDecodeError (model output did not match the expected schema)
  - ExternalCallFailure (model call failed)
    - ModelTimeoutError (model call exceeded its deadline)
  - ThreadNotFoundError (resume requested for an unknown thread)

Interrupts are not errors. A stage that needs out-of-band authorization stops
the run with an INTERRUPTED outcome (see switchboard.framework.engine).
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class ErrorCategory(Enum):
    """Categories of errors for classification and handling."""

    GRAPH_DEFINITION = "graph_definition"
    STATE_SCHEMA = "state_schema"
    ROUTING = "routing"
    RECURSION_LIMIT = "recursion_limit"
    CLASSIFICATION_DECODE = "classification_decode"
    EXTERNAL_CALL = "external_call"
    EXTERNAL_TIMEOUT = "external_timeout"
    THREAD_NOT_FOUND = "thread_not_found"
    UNKNOWN = "unknown"


class SwitchboardError(Exception):
    """Base exception for all Switchboard errors.

    Carries a category, a details dict safe to show to API callers, an
    optional recovery hint and a short correlation id for log lookup.
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        details: Optional[dict[str, Any]] = None,
        recovery_hint: Optional[str] = None,
        correlation_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.details = details or {}
        self.recovery_hint = recovery_hint
        self.correlation_id = correlation_id or str(uuid.uuid4())[:8]
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    @property
    def retryable(self) -> bool:
        """Whether repeating the same operation may succeed."""
        return False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.message,
            "category": self.category.value,
            "correlation_id": self.correlation_id,
            "recovery_hint": self.recovery_hint,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        return self.message


class GraphDefinitionError(SwitchboardError):
    """Graph failed structural validation at compile time.

    All violations are collected, not only the first one.
    """

    def __init__(self, violations: list[str], **kwargs: Any):
        summary = "; ".join(violations)
        super().__init__(
            f"Invalid graph ({len(violations)} violation(s)): {summary}",
            category=ErrorCategory.GRAPH_DEFINITION,
            recovery_hint="Fix the graph definition; it cannot be compiled as declared.",
            **kwargs,
        )
        self.violations = list(violations)
        self.details["violations"] = self.violations


class StateSchemaError(SwitchboardError):
    """A state delta or message sequence violates the declared schema."""

    def __init__(self, message: str, field_name: Optional[str] = None, **kwargs: Any):
        super().__init__(message, category=ErrorCategory.STATE_SCHEMA, **kwargs)
        self.field_name = field_name
        if field_name is not None:
            self.details["field"] = field_name


class RoutingError(SwitchboardError):
    """Router produced a value with no matching edge.

    Indicates a configuration bug rather than a transient condition.
    """

    def __init__(
        self,
        node: str,
        key: Any,
        available: Optional[list[str]] = None,
        **kwargs: Any,
    ):
        available = available or []
        super().__init__(
            f"Router for '{node}' returned '{key}', expected one of {available}",
            category=ErrorCategory.ROUTING,
            **kwargs,
        )
        self.node = node
        self.key = key
        self.available = available
        self.details.update({"node": node, "key": str(key), "available": available})


class RecursionLimitError(SwitchboardError):
    """Run exceeded its maximum number of stage executions."""

    def __init__(self, max_steps: int, node: str, **kwargs: Any):
        super().__init__(
            f"Step limit ({max_steps}) exceeded at node: {node}",
            category=ErrorCategory.RECURSION_LIMIT,
            recovery_hint="Check for a routing cycle without a progress guard.",
            **kwargs,
        )
        self.max_steps = max_steps
        self.node = node
        self.details.update({"max_steps": max_steps, "node": node})


class ClassificationDecodeError(SwitchboardError):
    """Model output did not parse against the expected classification schema.

    Never mapped to a default route. The conversation state is left untouched
    and the thread stays resumable at the classifying node.
    """

    def __init__(
        self,
        message: str,
        raw_output: Optional[str] = None,
        expected: Optional[list[str]] = None,
        **kwargs: Any,
    ):
        super().__init__(
            message,
            category=ErrorCategory.CLASSIFICATION_DECODE,
            recovery_hint="Retry the conversation turn; the thread is still resumable.",
            **kwargs,
        )
        self.raw_output = raw_output
        self.expected = expected or []
        self.details["expected"] = self.expected
        if raw_output is not None:
            self.details["raw_output"] = raw_output[:500]

    @property
    def retryable(self) -> bool:
        return True


class ExternalCallFailure(SwitchboardError):
    """The language model call itself failed (network, provider error)."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        category: ErrorCategory = ErrorCategory.EXTERNAL_CALL,
        **kwargs: Any,
    ):
        kwargs.setdefault(
            "recovery_hint", "Check the model provider URL, API key and service status."
        )
        super().__init__(message, category=category, **kwargs)
        self.provider = provider
        self.status_code = status_code
        self.details["provider"] = provider
        if status_code is not None:
            self.details["status_code"] = status_code

    @property
    def retryable(self) -> bool:
        # Client errors other than rate limiting will not change on retry
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class ModelTimeoutError(ExternalCallFailure):
    """Model call exceeded its deadline."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ):
        super().__init__(
            message,
            provider=provider,
            category=ErrorCategory.EXTERNAL_TIMEOUT,
            recovery_hint=(
                f"Call timed out after {timeout} seconds. Increase the timeout or retry."
                if timeout
                else "Call timed out. Retry later."
            ),
            **kwargs,
        )
        self.timeout = timeout
        self.details["timeout"] = timeout


class ThreadNotFoundError(SwitchboardError):
    """No checkpoint exists for the requested thread."""

    def __init__(self, thread_id: str, **kwargs: Any):
        super().__init__(
            f"Thread not found: {thread_id}",
            category=ErrorCategory.THREAD_NOT_FOUND,
            recovery_hint="Start a new conversation instead of resuming.",
            **kwargs,
        )
        self.thread_id = thread_id
        self.details["thread_id"] = thread_id


__all__ = [
    "ErrorCategory",
    "SwitchboardError",
    "GraphDefinitionError",
    "StateSchemaError",
    "RoutingError",
    "RecursionLimitError",
    "ClassificationDecodeError",
    "ExternalCallFailure",
    "ModelTimeoutError",
    "ThreadNotFoundError",
]
