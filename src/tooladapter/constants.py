"""Project-wide constants for tooladapter."""

# ==============================================================================
# Prompt Text
# ==============================================================================

# Exactly one ``%s``: the rendered tool descriptions go there.
PROMPT_PLACEHOLDER = "%s"

DEFAULT_PROMPT_TEMPLATE = """System/tooling instructions:

You have access to the following functions. When a function call is needed, respond immediately (starting at the first token) with a single JSON array of tool calls, and include no natural-language text before or after the JSON.

Available functions:
%s

Formatting requirements:
- Output must be valid JSON only (no code fences).
- Structure: [{"name": "function_name", "parameters": {…}}] (use null if there are no parameters).
- If multiple calls are required, include them all in the single JSON array.

Decision policy:
- Use tools when they are required to answer correctly or efficiently; otherwise reply in natural language without calling any tools."""

TOOL_RESULTS_HEADER = (
    "Previous tool calls requested by you returned the following results. "
    "They likely need formatting into a natural language response for the user:\n\n"
)

# ==============================================================================
# Detection Limits
# ==============================================================================

_MB = 1024 * 1024

DEFAULT_MAX_CALLS = 8
DEFAULT_MAX_BUFFER_CHARS = 10 * _MB

# Longest info string accepted after an opening ``` before we stop treating it
# as a fence (e.g. ```json, ```javascript).
MAX_FENCE_HEADER_CHARS = 20

# Function names: OpenAI-style identifiers, optionally one MCP-style
# ``server.tool`` prefix. Both forms share the 64 character ceiling.
MAX_FUNCTION_NAME_CHARS = 64

# ==============================================================================
# Transport
# ==============================================================================

SSE_DONE = "[DONE]"
CHUNK_OBJECT = "chat.completion.chunk"

# Retryable status codes used when mapping backend failures.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 409, 429, 500, 502, 503, 504})
