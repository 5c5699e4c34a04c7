"""Resend email integration."""

import requests

from flowsmith.core.registry import ActionDescriptor, ConfigField, EnvVar, Integration


def send_email(config, credentials):
    """Send a plain-text email through the Resend API."""
    api_key = credentials.get("RESEND_API_KEY")
    sender = config.get("emailFrom") or credentials.get("RESEND_FROM_EMAIL")
    if not api_key:
        return {"ok": False, "error": "RESEND_API_KEY is not configured"}
    if not sender:
        return {"ok": False, "error": "RESEND_FROM_EMAIL is not configured"}

    payload = {
        "from": sender,
        "to": [addr.strip() for addr in str(config.get("emailTo", "")).split(",") if addr.strip()],
        "subject": config.get("emailSubject", ""),
        "text": config.get("emailBody", ""),
    }
    try:
        response = requests.post(
            "https://api.resend.com/emails",
            json=payload,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=30,
        )
    except requests.RequestException as exc:
        return {"ok": False, "error": f"Failed to send email: {exc}"}

    if not response.ok:
        return {"ok": False, "error": f"Failed to send email: HTTP {response.status_code} {response.text[:500]}"}
    try:
        body = response.json()
    except ValueError:
        body = {}
    return {"ok": True, "id": body.get("id", "")}


INTEGRATION = Integration(
    type="resend",
    label="Resend",
    description="Send transactional emails",
    credential_keys=("RESEND_API_KEY", "RESEND_FROM_EMAIL"),
    dependencies={"requests": ">=2.31"},
    env_vars=(
        EnvVar("RESEND_API_KEY", "Your Resend API key"),
        EnvVar("RESEND_FROM_EMAIL", "Default sender address"),
    ),
    actions=(
        ActionDescriptor(
            integration="resend",
            slug="send-email",
            label="Send Email",
            description="Send an email via Resend",
            category="Resend",
            execute=send_email,
            source_imports=("import requests",),
            config_schema=(
                ConfigField("emailTo", required=True, label="To", example="user@example.com"),
                ConfigField("emailSubject", required=True, label="Subject"),
                ConfigField("emailBody", required=True, type="text", label="Body"),
                ConfigField("emailFrom", label="From"),
            ),
        ),
    ),
)
