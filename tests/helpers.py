"""Builders for node and connection payloads used across the tests."""

from typing import Any, Dict, Optional

from automation_engine.models.core import NodeType

ORG_HEADERS = {"X-Organization-Id": "org-1", "X-User-Id": "user-1"}
OTHER_ORG_HEADERS = {"X-Organization-Id": "org-2", "X-User-Id": "user-2"}


def node(key: str, node_type: NodeType, config: Optional[Dict[str, Any]] = None, **extra) -> Dict[str, Any]:
    data = {
        "node_id": key,
        "type": node_type,
        "name": key.replace("_", " ").title(),
        "config": config or {},
    }
    data.update(extra)
    return data


def edge(source: str, target: str, **extra) -> Dict[str, Any]:
    data = {
        "edge_id": f"{source}-{target}",
        "source_node_id": source,
        "target_node_id": target,
    }
    data.update(extra)
    return data


def email_action(subject: str = "Welcome {{payload.name}}", body: str = "<p>Hello {{payload.name}}</p>", **extra):
    action = {"subject": subject, "body": body}
    action.update(extra)
    return {"actionType": "email", "emailAction": action}


def sms_action(message: str = "Hi {{payload.name}}", **extra):
    action = {"message": message}
    action.update(extra)
    return {"actionType": "sms", "smsAction": action}
