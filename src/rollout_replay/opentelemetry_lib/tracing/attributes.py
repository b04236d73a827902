from opentelemetry.semconv._incubating.attributes.gen_ai_attributes import (
    GEN_AI_REQUEST_MODEL,
    GEN_AI_RESPONSE_MODEL,
    GEN_AI_SYSTEM,
)

SPAN_TYPE = "rollout.span.type"
SPAN_ORIGINAL_TYPE = "rollout.span.original_type"
SPAN_PATH = "rollout.span.path"
SPAN_IDS_PATH = "rollout.span.ids_path"
PARENT_SPAN_PATH = "rollout.span.parent_path"
PARENT_SPAN_IDS_PATH = "rollout.span.parent_ids_path"
SPAN_INSTRUMENTATION_SOURCE = "rollout.span.instrumentation_source"
SPAN_SDK_VERSION = "rollout.span.sdk_version"
SPAN_LANGUAGE_VERSION = "rollout.span.language_version"

ROLLOUT_SESSION_ID = "rollout.session_id"
ROLLOUT_CACHE_INDEX = "rollout.cache_index"
ROLLOUT_PATH_COUNT = "rollout.path.count"

# Written by AI SDK style instrumentations, re-recorded when overrides apply
PROMPT_MESSAGES = "ai.prompt.messages"
PROMPT_TOOLS = "ai.prompt.tools"
RESPONSE_FINISH_REASON = "ai.response.finishReason"
AI_MODEL_ID = "ai.model.id"
TOOL_CALL_SPAN_NAME = "ai.toolCall"
TOOL_CALL_ID = "ai.toolCall.id"
TOOL_CALL_NAME = "ai.toolCall.name"
