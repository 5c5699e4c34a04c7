"""Tests for the bundled integrations (HTTP calls are mocked)."""

from __future__ import annotations

from unittest.mock import Mock, patch

import pytest
import requests

from flowsmith.integrations.http import http_request
from flowsmith.integrations.linear import create_linear_ticket, find_linear_issues
from flowsmith.integrations.resend import send_email
from flowsmith.integrations.slack import send_slack_message


def _response(body=None, ok=True, status_code=200, content_type="application/json", text=""):
    response = Mock(ok=ok, status_code=status_code, text=text, headers={"content-type": content_type})
    response.json.return_value = body
    return response


# =============================================================================
# Resend
# =============================================================================


class TestSendEmail:
    CREDS = {"RESEND_API_KEY": "re_test", "RESEND_FROM_EMAIL": "bot@example.com"}
    CONFIG = {"emailTo": "a@b.com, c@d.com", "emailSubject": "Hi", "emailBody": "Body"}

    def test_success(self):
        with patch("flowsmith.integrations.resend.requests.post", return_value=_response({"id": "m1"})) as post:
            result = send_email(dict(self.CONFIG), self.CREDS)

        assert result == {"ok": True, "id": "m1"}
        assert post.call_args.kwargs["json"] == {
            "from": "bot@example.com",
            "to": ["a@b.com", "c@d.com"],
            "subject": "Hi",
            "text": "Body",
        }
        assert post.call_args.kwargs["timeout"] == 30

    def test_sender_from_config(self):
        with patch("flowsmith.integrations.resend.requests.post", return_value=_response({"id": "m1"})) as post:
            send_email({**self.CONFIG, "emailFrom": "me@example.com"}, self.CREDS)
        assert post.call_args.kwargs["json"]["from"] == "me@example.com"

    def test_missing_api_key(self):
        with patch("flowsmith.integrations.resend.requests.post") as post:
            result = send_email(dict(self.CONFIG), {})
        assert result == {"ok": False, "error": "RESEND_API_KEY is not configured"}
        post.assert_not_called()

    def test_http_error(self):
        failing = _response(ok=False, status_code=422, text="invalid to")
        with patch("flowsmith.integrations.resend.requests.post", return_value=failing):
            result = send_email(dict(self.CONFIG), self.CREDS)
        assert not result["ok"]
        assert "422" in result["error"]

    def test_network_error(self):
        with patch(
            "flowsmith.integrations.resend.requests.post",
            side_effect=requests.ConnectionError("refused"),
        ):
            result = send_email(dict(self.CONFIG), self.CREDS)
        assert not result["ok"]
        assert "refused" in result["error"]


# =============================================================================
# Slack
# =============================================================================


class TestSlack:
    def test_success(self):
        body = {"ok": True, "ts": "171.1", "channel": "C1"}
        with patch("flowsmith.integrations.slack.requests.post", return_value=_response(body)) as post:
            result = send_slack_message({"slackChannel": "#ops", "slackMessage": "hi"}, {"SLACK_API_KEY": "x"})

        assert result == {"ok": True, "ts": "171.1", "channel": "C1"}
        assert post.call_args.kwargs["headers"] == {"Authorization": "Bearer x"}

    def test_api_error_with_http_200(self):
        with patch(
            "flowsmith.integrations.slack.requests.post",
            return_value=_response({"ok": False, "error": "channel_not_found"}),
        ):
            result = send_slack_message({"slackChannel": "#nope", "slackMessage": "hi"}, {"SLACK_API_KEY": "x"})
        assert result == {"ok": False, "error": "Failed to send Slack message: channel_not_found"}

    def test_missing_token(self):
        assert not send_slack_message({}, {})["ok"]


# =============================================================================
# Linear
# =============================================================================


class TestLinear:
    CREDS = {"LINEAR_API_KEY": "lin", "LINEAR_TEAM_ID": "team-1"}

    def test_create_ticket(self):
        body = {
            "data": {
                "issueCreate": {
                    "success": True,
                    "issue": {"id": "i1", "identifier": "ENG-1", "title": "Bug", "url": "https://l/ENG-1"},
                }
            }
        }
        with patch("flowsmith.integrations.linear.requests.post", return_value=_response(body)) as post:
            result = create_linear_ticket({"ticketTitle": "Bug", "ticketPriority": "2"}, self.CREDS)

        assert result == {
            "ok": True,
            "id": "i1",
            "identifier": "ENG-1",
            "title": "Bug",
            "url": "https://l/ENG-1",
        }
        issue = post.call_args.kwargs["json"]["variables"]["input"]
        assert issue == {"teamId": "team-1", "title": "Bug", "description": "", "priority": 2}

    def test_invalid_priority(self):
        with patch("flowsmith.integrations.linear.requests.post") as post:
            result = create_linear_ticket({"ticketTitle": "Bug", "ticketPriority": "high"}, self.CREDS)
        assert not result["ok"]
        post.assert_not_called()

    def test_graphql_errors(self):
        with patch(
            "flowsmith.integrations.linear.requests.post",
            return_value=_response({"errors": [{"message": "Team not found"}]}),
        ):
            result = create_linear_ticket({"ticketTitle": "Bug"}, self.CREDS)
        assert result == {"ok": False, "error": "Failed to create ticket: Team not found"}

    def test_find_issues(self):
        body = {
            "data": {
                "issues": {
                    "nodes": [
                        {
                            "id": "i1",
                            "identifier": "ENG-1",
                            "title": "Bug",
                            "url": "u",
                            "priority": 1,
                            "state": {"name": "Todo"},
                        }
                    ]
                }
            }
        }
        with patch("flowsmith.integrations.linear.requests.post", return_value=_response(body)) as post:
            result = find_linear_issues({"linearStatus": "Todo"}, self.CREDS)

        assert result["count"] == 1
        assert result["issues"][0]["state"] == "Todo"
        issue_filter = post.call_args.kwargs["json"]["variables"]["filter"]
        assert issue_filter == {
            "team": {"id": {"eq": "team-1"}},
            "state": {"name": {"eqIgnoreCase": "Todo"}},
        }


# =============================================================================
# HTTP
# =============================================================================


class TestHttpRequest:
    def test_get_json(self):
        with patch(
            "flowsmith.integrations.http.requests.request",
            return_value=_response({"items": [1]}),
        ) as request:
            result = http_request({"endpoint": "https://api.example.com"}, {})

        assert result == {"ok": True, "data": {"items": [1]}, "status": 200}
        args, kwargs = request.call_args
        assert args == ("GET", "https://api.example.com")
        assert kwargs["data"] is None

    def test_post_with_headers_and_body(self):
        with patch(
            "flowsmith.integrations.http.requests.request",
            return_value=_response(content_type="text/plain", text="created"),
        ) as request:
            result = http_request(
                {
                    "endpoint": "https://api.example.com",
                    "httpMethod": "post",
                    "httpHeaders": '{"X-Key": "1"}',
                    "httpBody": '{"a": 1}',
                },
                {},
            )

        assert result["data"] == "created"
        args, kwargs = request.call_args
        assert args[0] == "POST"
        assert kwargs["headers"] == {"X-Key": "1", "Content-Type": "application/json"}
        assert kwargs["data"] == '{"a": 1}'

    @pytest.mark.parametrize(
        "config,error",
        [
            ({}, "URL is required"),
            ({"endpoint": "https://x", "httpHeaders": "{bad"}, "headers are not valid JSON"),
        ],
    )
    def test_invalid_config(self, config, error):
        result = http_request(config, {})
        assert not result["ok"]
        assert error in result["error"]

    def test_error_status(self):
        with patch(
            "flowsmith.integrations.http.requests.request",
            return_value=_response(ok=False, status_code=500, text="oops"),
        ):
            result = http_request({"endpoint": "https://x"}, {})
        assert result == {"ok": False, "error": "HTTP request failed with status 500: oops"}
