"""
CRUD + traversal endpoints, one router per record family.

    GET    /{family}                  list (filter[...], set[...])
    GET    /{family}/count            {"count": n}
    GET    /{family}/{id}             one record, 404 when absent or hidden
    GET    /{family}/{id}/children    records whose _parents reference {id}
    POST   /{family}/{id}/children    create a child of {id}
    GET    /{family}/{id}/parents     records referenced by {id}._parents
    POST   /{family}                  create
    PATCH  /{family}                  bulk update by where[...] / set[...] -> {"count": n}
    PUT    /{family}/{id}             full replace   (204)
    PATCH  /{family}/{id}             partial update (204)
    DELETE /{family}/{id}             delete + cascade (204)
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Response
from pydantic import BaseModel

from recordhub.api.deps import get_query, get_requester, get_service
from recordhub.core.logging import get_logger
from recordhub.query.access import Requester
from recordhub.records.families import Family
from recordhub.records.service import RecordService

logger = get_logger(__name__)


class CountResponse(BaseModel):
    count: int


def build_router(family: Family) -> APIRouter:
    """Router serving every endpoint of *family* (mounted at ``/{segment}``)."""
    router = APIRouter()
    segment = family.segment

    @router.get("", summary=f"List {segment}")
    def list_records(
        query: dict = Depends(get_query),
        service: RecordService = Depends(get_service),
        requester: Requester = Depends(get_requester),
    ) -> list[dict[str, Any]]:
        return service.find(segment, query, requester)

    @router.get("/count", response_model=CountResponse, summary=f"Count {segment}")
    def count_records(
        query: dict = Depends(get_query),
        service: RecordService = Depends(get_service),
        requester: Requester = Depends(get_requester),
    ) -> CountResponse:
        return CountResponse(count=service.count(segment, query, requester))

    @router.get("/{record_id}", summary=f"Get one {family.friendly}")
    def get_record(
        record_id: str,
        query: dict = Depends(get_query),
        service: RecordService = Depends(get_service),
        requester: Requester = Depends(get_requester),
    ) -> dict[str, Any]:
        return service.find_by_id(segment, record_id, requester, query)

    if family.has_access_fields:

        @router.get("/{record_id}/children", summary=f"Children of a {family.friendly}")
        def get_children(
            record_id: str,
            query: dict = Depends(get_query),
            service: RecordService = Depends(get_service),
            requester: Requester = Depends(get_requester),
        ) -> list[dict[str, Any]]:
            return service.find_children(segment, record_id, requester, query)

        @router.post("/{record_id}/children", summary=f"Create a child {family.friendly}")
        def create_child(
            record_id: str,
            payload: dict[str, Any] = Body(...),
            service: RecordService = Depends(get_service),
            requester: Requester = Depends(get_requester),
        ) -> dict[str, Any]:
            return service.create_child(segment, record_id, payload, requester)

        @router.get("/{record_id}/parents", summary=f"Parents of a {family.friendly}")
        def get_parents(
            record_id: str,
            query: dict = Depends(get_query),
            service: RecordService = Depends(get_service),
            requester: Requester = Depends(get_requester),
        ) -> list[dict[str, Any]]:
            return service.find_parents(segment, record_id, requester, query)

    @router.post("", summary=f"Create a {family.friendly}")
    def create_record(
        payload: dict[str, Any] = Body(...),
        service: RecordService = Depends(get_service),
        requester: Requester = Depends(get_requester),
    ) -> dict[str, Any]:
        return service.create(segment, payload, requester)

    @router.patch("", response_model=CountResponse, summary=f"Update matching {segment}")
    def update_records(
        payload: dict[str, Any] = Body(...),
        query: dict = Depends(get_query),
        service: RecordService = Depends(get_service),
        requester: Requester = Depends(get_requester),
    ) -> CountResponse:
        """Merge the body into every record picked by ``where[...]`` / ``set[...]``."""
        return CountResponse(count=service.update_all(segment, payload, query, requester))

    @router.put("/{record_id}", status_code=204, summary=f"Replace a {family.friendly}")
    def replace_record(
        record_id: str,
        payload: dict[str, Any] = Body(...),
        service: RecordService = Depends(get_service),
        requester: Requester = Depends(get_requester),
    ) -> Response:
        service.replace(segment, record_id, payload, requester)
        return Response(status_code=204)

    @router.patch("/{record_id}", status_code=204, summary=f"Update a {family.friendly}")
    def update_record(
        record_id: str,
        payload: dict[str, Any] = Body(...),
        service: RecordService = Depends(get_service),
        requester: Requester = Depends(get_requester),
    ) -> Response:
        service.update(segment, record_id, payload, requester)
        return Response(status_code=204)

    @router.delete("/{record_id}", status_code=204, summary=f"Delete a {family.friendly}")
    def delete_record(
        record_id: str,
        service: RecordService = Depends(get_service),
    ) -> Response:
        service.delete(segment, record_id)
        return Response(status_code=204)

    return router
