"""Linear issue tracker integration (GraphQL API)."""

import requests

from flowsmith.core.registry import ActionDescriptor, ConfigField, EnvVar, Integration


def create_linear_ticket(config, credentials):
    """Create a Linear issue in the configured team."""
    api_key = credentials.get("LINEAR_API_KEY")
    team_id = config.get("linearTeamId") or credentials.get("LINEAR_TEAM_ID")
    if not api_key:
        return {"ok": False, "error": "LINEAR_API_KEY is not configured"}
    if not team_id:
        return {"ok": False, "error": "LINEAR_TEAM_ID is not configured"}

    issue = {
        "teamId": team_id,
        "title": config.get("ticketTitle", ""),
        "description": config.get("ticketDescription", ""),
    }
    priority = config.get("ticketPriority")
    if priority not in (None, ""):
        try:
            issue["priority"] = int(priority)
        except (TypeError, ValueError):
            return {"ok": False, "error": f"Invalid ticket priority: {priority!r}"}

    query = (
        "mutation IssueCreate($input: IssueCreateInput!) { issueCreate(input: $input) "
        "{ success issue { id identifier title url } } }"
    )
    try:
        response = requests.post(
            "https://api.linear.app/graphql",
            json={"query": query, "variables": {"input": issue}},
            headers={"Authorization": api_key},
            timeout=30,
        )
        body = response.json()
    except requests.RequestException as exc:
        return {"ok": False, "error": f"Failed to create ticket: {exc}"}
    except ValueError:
        return {"ok": False, "error": f"Failed to create ticket: HTTP {response.status_code}"}

    if body.get("errors"):
        return {"ok": False, "error": f"Failed to create ticket: {body['errors'][0].get('message')}"}
    result = (body.get("data") or {}).get("issueCreate") or {}
    created = result.get("issue")
    if not result.get("success") or not created:
        return {"ok": False, "error": "Failed to create ticket: Linear did not return an issue"}
    return {
        "ok": True,
        "id": created.get("id", ""),
        "identifier": created.get("identifier", ""),
        "title": created.get("title", ""),
        "url": created.get("url", ""),
    }


def find_linear_issues(config, credentials):
    """List Linear issues, optionally filtered by team, assignee and state."""
    api_key = credentials.get("LINEAR_API_KEY")
    if not api_key:
        return {"ok": False, "error": "LINEAR_API_KEY is not configured"}

    issue_filter = {}
    team_id = config.get("linearTeamId") or credentials.get("LINEAR_TEAM_ID")
    if team_id:
        issue_filter["team"] = {"id": {"eq": team_id}}
    if config.get("linearAssigneeId"):
        issue_filter["assignee"] = {"id": {"eq": config["linearAssigneeId"]}}
    if config.get("linearStatus"):
        issue_filter["state"] = {"name": {"eqIgnoreCase": config["linearStatus"]}}

    query = (
        "query Issues($filter: IssueFilter) { issues(first: 50, filter: $filter) "
        "{ nodes { id identifier title url priority state { name } } } }"
    )
    try:
        response = requests.post(
            "https://api.linear.app/graphql",
            json={"query": query, "variables": {"filter": issue_filter}},
            headers={"Authorization": api_key},
            timeout=30,
        )
        body = response.json()
    except requests.RequestException as exc:
        return {"ok": False, "error": f"Failed to find issues: {exc}"}
    except ValueError:
        return {"ok": False, "error": f"Failed to find issues: HTTP {response.status_code}"}

    if body.get("errors"):
        return {"ok": False, "error": f"Failed to find issues: {body['errors'][0].get('message')}"}
    nodes = (((body.get("data") or {}).get("issues") or {}).get("nodes")) or []
    issues = [
        {
            "id": node.get("id"),
            "identifier": node.get("identifier"),
            "title": node.get("title"),
            "url": node.get("url"),
            "priority": node.get("priority"),
            "state": (node.get("state") or {}).get("name"),
        }
        for node in nodes
    ]
    return {"ok": True, "issues": issues, "count": len(issues)}


INTEGRATION = Integration(
    type="linear",
    label="Linear",
    description="Create and search Linear issues",
    credential_keys=("LINEAR_API_KEY", "LINEAR_TEAM_ID"),
    dependencies={"requests": ">=2.31"},
    env_vars=(
        EnvVar("LINEAR_API_KEY", "Linear personal API key"),
        EnvVar("LINEAR_TEAM_ID", "Default team for new issues"),
    ),
    actions=(
        ActionDescriptor(
            integration="linear",
            slug="create-ticket",
            label="Create Ticket",
            description="Create a new issue in Linear",
            category="Linear",
            execute=create_linear_ticket,
            source_imports=("import requests",),
            config_schema=(
                ConfigField("ticketTitle", required=True, label="Title"),
                ConfigField("ticketDescription", type="text", label="Description"),
                ConfigField("ticketPriority", type="number", label="Priority", example="2"),
                ConfigField("linearTeamId", label="Team ID"),
            ),
        ),
        ActionDescriptor(
            integration="linear",
            slug="find-issues",
            label="Find Issues",
            description="Search Linear issues",
            category="Linear",
            execute=find_linear_issues,
            source_imports=("import requests",),
            config_schema=(
                ConfigField("linearTeamId", label="Team ID"),
                ConfigField("linearAssigneeId", label="Assignee ID"),
                ConfigField("linearStatus", label="Status", example="In Progress"),
            ),
        ),
    ),
)
