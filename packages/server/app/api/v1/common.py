"""Shared route plumbing: the RPC client dependency, paging params, envelopes."""

from __future__ import annotations

from typing import Any

from fastapi import Query, Request

from credhub_shared.schemas.common import APIResponse, PageQuery


def get_rpc(request: Request):
    """The transport client wired at startup (in-process or Redis)."""
    return request.app.state.rpc


def page_query(
    pageNumber: int = Query(1, ge=1),
    pageSize: int = Query(10, ge=1, le=100),
    search: str = Query(""),
) -> PageQuery:
    return PageQuery(page_number=pageNumber, page_size=pageSize, search=search.strip())


def ok(message: str, data: Any = None, status_code: int = 200) -> APIResponse:
    return APIResponse(statusCode=status_code, message=message, data=data)
