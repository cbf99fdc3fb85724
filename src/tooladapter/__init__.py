"""tooladapter: prompt-based tool calling for backends without native support.

Public API:
    - ToolAdapter: request/response/stream transformations under one Config
    - ToolCallingClient: adapter plus backend in one call
    - Config, ToolPolicy: configuration
    - SSEReader, SSEWriter, SSEStreamAdapter: server-sent-events transport
"""

from __future__ import annotations

import logging

from tooladapter.adapter import ToolAdapter
from tooladapter.assembler import (
    DetectorState,
    EventKind,
    StreamEvent,
    ToolCallAssembler,
    decide_lookahead,
)
from tooladapter.client import ToolCallingClient
from tooladapter.config import Config
from tooladapter.errors import (
    ConfigurationError,
    InternalError,
    InvalidToolDefinitionError,
    StreamCancelledError,
    ToolAdapterError,
    TransportError,
)
from tooladapter.extract import ExtractionResult, extract_tool_calls, transform_response
from tooladapter.metrics import ToolCallDetectionEvent, ToolTransformationEvent
from tooladapter.models import ToolCall, ToolDefinition
from tooladapter.policy import ToolPolicy
from tooladapter.prompt import inject_tools
from tooladapter.sse import SSEReader, SSEStreamAdapter, SSETransformResult, SSEWriter
from tooladapter.streaming import transform_chunks

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("tooladapter")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("tooladapter").addHandler(logging.NullHandler())

__all__ = [
    "Config",
    "ConfigurationError",
    "DetectorState",
    "EventKind",
    "ExtractionResult",
    "InternalError",
    "InvalidToolDefinitionError",
    "SSEReader",
    "SSEStreamAdapter",
    "SSETransformResult",
    "SSEWriter",
    "StreamCancelledError",
    "StreamEvent",
    "ToolAdapter",
    "ToolAdapterError",
    "ToolCall",
    "ToolCallAssembler",
    "ToolCallDetectionEvent",
    "ToolCallingClient",
    "ToolDefinition",
    "ToolPolicy",
    "ToolTransformationEvent",
    "TransportError",
    "__version__",
    "decide_lookahead",
    "extract_tool_calls",
    "inject_tools",
    "transform_chunks",
    "transform_response",
]
