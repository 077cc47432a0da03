"""Request-scoped dependencies shared by the routers."""
from __future__ import annotations

from typing import Any

from fastapi import Request

from recordhub.query.access import Requester, parse_requester
from recordhub.query.filter_parser import decode_query
from recordhub.records.service import RecordService


def get_service(request: Request) -> RecordService:
    return request.app.state.service


def get_requester(request: Request) -> Requester:
    """Caller identity from the configured user / group headers."""
    config = get_service(request).config
    return parse_requester(
        request.headers.get(config.user_header),
        request.headers.get(config.groups_header),
    )


def get_query(request: Request) -> dict[str, Any]:
    """The raw query string decoded into nested ``filter`` / ``set`` maps."""
    return decode_query(request.url.query)
