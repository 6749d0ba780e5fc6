"""
In-memory session + project storage.

Sessions are keyed by the ``X-Session-Id`` header. Project persistence is
fire-and-forget: failures are logged and reported back as a message, never
raised.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, Dict, Optional

from core.config import PROJECT_DIR
from core.models import Project

logger = logging.getLogger("uvicorn.error")


# ---------------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------------

SESSIONS: Dict[str, Any] = {}
SESS_HASHES: Dict[str, Dict[str, str]] = {}


def get_session(session_id: str, factory: Callable[[], Any] = dict) -> Any:
    if session_id not in SESSIONS:
        SESSIONS[session_id] = factory()
    return SESSIONS[session_id]


def get_session_hashes(session_id: str) -> Dict[str, str]:
    if session_id not in SESS_HASHES:
        SESS_HASHES[session_id] = {}
    return SESS_HASHES[session_id]


# ---------------------------------------------------------------------------
# Project persistence
# ---------------------------------------------------------------------------

# project_id -> serialized project (raw rows excluded)
SAVED_PROJECTS: Dict[str, dict] = {}


def project_payload(project: Project) -> dict:
    """Serializable project config; data source rows are left out."""
    payload = project.model_dump(by_alias=True, mode="json")
    for source in payload.get("dataSources", []):
        source.pop("data", None)
    return payload


def save_project(project: Project, project_dir: Optional[str] = PROJECT_DIR) -> Optional[str]:
    """
    Persist *project*. Returns None on success, otherwise the error message.
    Never raises.
    """
    try:
        payload = project_payload(project)
        SAVED_PROJECTS[project.id] = payload
        if project_dir:
            os.makedirs(project_dir, exist_ok=True)
            path = os.path.join(project_dir, f"{project.id}.json")
            with open(path, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
    except Exception as e:
        logger.exception("Failed to save project %s", project.id)
        return f"Failed to save project: {e}"
    return None


def load_project(project_id: str, project_dir: Optional[str] = PROJECT_DIR) -> Optional[Project]:
    """Saved project config (without rows), or None."""
    payload = SAVED_PROJECTS.get(project_id)
    if payload is None and project_dir:
        path = os.path.join(project_dir, f"{project_id}.json")
        if os.path.exists(path):
            with open(path, encoding="utf-8") as fh:
                payload = json.load(fh)
    if payload is None:
        return None
    return Project.model_validate(payload)
