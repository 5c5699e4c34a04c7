"""Slack integration."""

import requests

from flowsmith.core.registry import ActionDescriptor, ConfigField, EnvVar, Integration


def send_slack_message(config, credentials):
    """Post a message to a Slack channel with chat.postMessage."""
    token = credentials.get("SLACK_API_KEY")
    if not token:
        return {"ok": False, "error": "SLACK_API_KEY is not configured"}

    try:
        response = requests.post(
            "https://slack.com/api/chat.postMessage",
            json={"channel": config.get("slackChannel"), "text": config.get("slackMessage", "")},
            headers={"Authorization": f"Bearer {token}"},
            timeout=30,
        )
        body = response.json()
    except requests.RequestException as exc:
        return {"ok": False, "error": f"Failed to send Slack message: {exc}"}
    except ValueError:
        return {"ok": False, "error": f"Failed to send Slack message: HTTP {response.status_code}"}

    # Slack reports API errors with HTTP 200 and ok=false.
    if not body.get("ok"):
        return {"ok": False, "error": f"Failed to send Slack message: {body.get('error', 'unknown error')}"}
    return {"ok": True, "ts": body.get("ts", ""), "channel": body.get("channel", "")}


INTEGRATION = Integration(
    type="slack",
    label="Slack",
    description="Send messages to Slack channels",
    credential_keys=("SLACK_API_KEY",),
    dependencies={"requests": ">=2.31"},
    env_vars=(EnvVar("SLACK_API_KEY", "Slack bot token (xoxb-...)"),),
    actions=(
        ActionDescriptor(
            integration="slack",
            slug="send-message",
            label="Send Slack Message",
            description="Send a message to a Slack channel",
            category="Slack",
            execute=send_slack_message,
            source_imports=("import requests",),
            config_schema=(
                ConfigField("slackChannel", required=True, label="Channel", example="#general"),
                ConfigField("slackMessage", required=True, type="text", label="Message"),
            ),
        ),
    ),
)
