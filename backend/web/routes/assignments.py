"""
Submission routes nested under `/api/assignments`.

Permissions:
    - Submit: published assignment, student role, before the due date, once.
    - Own submissions: the acting identity.
    - Listing per assignment and grading: admin only.
    - Single submission and its file: the submitting student or an admin.

This router must be included before the generic assignment router so that
`/api/assignments/submissions/...` is not captured by `/{resource_id}`.
"""
from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, ConfigDict

from backend.web.http_utils import asset_response, private_json, read_payload, require_actor
from backend.web.wiring import get_platform

submissions_router = APIRouter(tags=["Submissions"])


class GradeRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    grade: Optional[str] = None
    feedback: Optional[str] = None


def _criteria(request: Request) -> Dict[str, Any]:
    params = request.query_params
    return {k: params.get(k) for k in ("graded", "page", "limit", "sort") if params.get(k) is not None}


@submissions_router.get("/api/assignments/submissions/my")
async def my_submissions(request: Request):
    actor = require_actor(request)
    page = await asyncio.to_thread(get_platform().submissions.my_submissions, actor, _criteria(request))
    return private_json(page)


@submissions_router.get("/api/assignments/submissions/{submission_id}")
async def get_submission(request: Request, submission_id: str):
    actor = require_actor(request)
    submission = await asyncio.to_thread(get_platform().submissions.get_submission, actor, submission_id)
    return private_json({"submission": submission})


@submissions_router.patch("/api/assignments/submissions/{submission_id}/grade")
async def grade_submission(request: Request, submission_id: str, payload: GradeRequest):
    actor = require_actor(request)
    graded = await asyncio.to_thread(
        get_platform().submissions.grade, actor, submission_id, grade=payload.grade, feedback=payload.feedback
    )
    return private_json({"submission": graded})


@submissions_router.get("/api/assignments/submissions/{submission_id}/download")
async def download_submission(request: Request, submission_id: str):
    actor = require_actor(request)
    asset = await asyncio.to_thread(get_platform().submissions.read_submission_asset, actor, submission_id)
    return asset_response(asset, disposition="attachment")


@submissions_router.post("/api/assignments/{assignment_id}/submit")
async def submit(request: Request, assignment_id: str):
    """Submit a `message` and/or a file part named `file_url` (201)."""
    actor = require_actor(request)
    fields, uploads = await read_payload(request)
    created = await asyncio.to_thread(
        get_platform().submissions.submit, actor, assignment_id, message=fields.get("message"), uploads=uploads
    )
    return private_json({"submission": created}, status_code=201)


@submissions_router.get("/api/assignments/{assignment_id}/submissions")
async def list_submissions(request: Request, assignment_id: str):
    actor = require_actor(request)
    page = await asyncio.to_thread(
        get_platform().submissions.list_submissions, actor, assignment_id, _criteria(request)
    )
    return private_json(page)


__all__ = ["submissions_router"]
