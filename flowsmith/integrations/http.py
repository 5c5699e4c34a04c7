"""Generic HTTP request action."""

import json

import requests

from flowsmith.core.registry import ActionDescriptor, ConfigField, Integration


def http_request(config, credentials):
    """Send an HTTP request and return the decoded response body."""
    endpoint = config.get("endpoint")
    if not endpoint:
        return {"ok": False, "error": "HTTP request failed: URL is required"}

    method = str(config.get("httpMethod") or "GET").upper()

    headers = {}
    raw_headers = config.get("httpHeaders")
    if isinstance(raw_headers, dict):
        headers = raw_headers
    elif isinstance(raw_headers, str) and raw_headers.strip():
        try:
            parsed = json.loads(raw_headers)
        except ValueError:
            return {"ok": False, "error": "HTTP request failed: headers are not valid JSON"}
        if isinstance(parsed, dict):
            headers = parsed

    body = None
    raw_body = config.get("httpBody")
    if method not in ("GET", "HEAD") and raw_body:
        if isinstance(raw_body, (dict, list)):
            body = json.dumps(raw_body)
        elif str(raw_body).strip() not in ("", "{}"):
            body = str(raw_body)
        if body is not None and not any(k.lower() == "content-type" for k in headers):
            headers = {**headers, "Content-Type": "application/json"}

    try:
        response = requests.request(method, endpoint, headers=headers, data=body, timeout=30)
    except requests.RequestException as exc:
        return {"ok": False, "error": f"HTTP request failed: {exc}"}

    if not response.ok:
        return {
            "ok": False,
            "error": f"HTTP request failed with status {response.status_code}: {response.text[:500]}",
        }

    data = response.text
    if "application/json" in response.headers.get("content-type", ""):
        try:
            data = response.json()
        except ValueError:
            pass
    return {"ok": True, "data": data, "status": response.status_code}


INTEGRATION = Integration(
    type="http",
    label="HTTP",
    description="Call any HTTP endpoint",
    dependencies={"requests": ">=2.31"},
    actions=(
        ActionDescriptor(
            integration="http",
            slug="request",
            label="HTTP Request",
            description="Make an HTTP request to any API endpoint",
            category="System",
            execute=http_request,
            source_imports=("import json", "import requests"),
            config_schema=(
                ConfigField("endpoint", required=True, label="URL", example="https://api.example.com/items"),
                ConfigField("httpMethod", label="Method", example="POST"),
                ConfigField("httpHeaders", type="json", label="Headers"),
                ConfigField("httpBody", type="json", label="Body"),
            ),
        ),
    ),
)
