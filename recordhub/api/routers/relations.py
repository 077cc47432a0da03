"""
Traversal and writes through list-entity relations.

    GET    /lists/{id}/entities     entities of a list
    POST   /lists/{id}/entities     create an entity inside the list
    PATCH  /lists/{id}/entities     bulk update (where / set, whereThrough / setThrough)
    DELETE /lists/{id}/entities     delete the list's entities -> {"count": n}
    GET    /entities/{id}/lists     lists containing an entity
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends

from recordhub.api.deps import get_query, get_requester, get_service
from recordhub.api.routers.records import CountResponse
from recordhub.query.access import Requester
from recordhub.records.service import RecordService

router = APIRouter()


@router.get("/lists/{list_id}/entities")
def list_entities(
    list_id: str,
    query: dict = Depends(get_query),
    service: RecordService = Depends(get_service),
    requester: Requester = Depends(get_requester),
) -> list[dict[str, Any]]:
    """Entities of a list, filtered by ``filter`` / ``set`` on the entity side."""
    return service.list_entities(list_id, requester, query)


@router.post("/lists/{list_id}/entities")
def create_list_entity(
    list_id: str,
    payload: dict[str, Any] = Body(...),
    service: RecordService = Depends(get_service),
    requester: Requester = Depends(get_requester),
) -> dict[str, Any]:
    return service.create_in_list(list_id, payload, requester)


@router.patch("/lists/{list_id}/entities", response_model=CountResponse)
def update_list_entities(
    list_id: str,
    payload: dict[str, Any] = Body(...),
    query: dict = Depends(get_query),
    service: RecordService = Depends(get_service),
    requester: Requester = Depends(get_requester),
) -> CountResponse:
    return CountResponse(count=service.update_list_entities(list_id, payload, query, requester))


@router.delete("/lists/{list_id}/entities", response_model=CountResponse)
def delete_list_entities(
    list_id: str,
    query: dict = Depends(get_query),
    service: RecordService = Depends(get_service),
    requester: Requester = Depends(get_requester),
) -> CountResponse:
    """Entities are removed together with their relations and reactions."""
    return CountResponse(count=service.delete_list_entities(list_id, query, requester))


@router.get("/entities/{entity_id}/lists")
def entity_lists(
    entity_id: str,
    query: dict = Depends(get_query),
    service: RecordService = Depends(get_service),
    requester: Requester = Depends(get_requester),
) -> list[dict[str, Any]]:
    """Lists that contain an entity."""
    return service.entity_lists(entity_id, requester, query)
