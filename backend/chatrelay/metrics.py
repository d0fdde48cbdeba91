from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

http_requests_total = Counter("http_requests_total", "HTTP requests", ["method", "endpoint", "status"])
http_request_duration = Histogram("http_request_duration_seconds", "HTTP request duration", ["method", "endpoint"])
provider_calls_total = Counter(
    "provider_api_calls_total", "LLM provider API calls", ["provider", "operation", "status"]
)
provider_latency = Histogram("provider_api_latency_seconds", "LLM provider API latency", ["provider", "operation"])
token_usage_total = Counter("llm_tokens_total", "LLM token usage", ["model", "type"])
relay_turns_total = Counter("relay_turns_total", "Relay turns by terminal state", ["state"])
quota_settlements_total = Counter(
    "quota_settlements_total", "Quota settlements", ["subject_type", "result"]
)


async def metrics_endpoint():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
