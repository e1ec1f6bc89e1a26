"""
Content API routes: one router per resource kind.

Why:
    Sermons, prayers, books, materials and assignments share one lifecycle
    (list, read, create, update, delete, asset retrieval), so a single router
    factory builds each kind's routes over its `ResourceService`. Kind-specific
    paths (author/uploader listings, download aliases, material categories)
    are declared in `KIND_ROUTES`.

Behavior:
    - Create and update accept JSON or multipart; a file part's name is the
      asset slot it fills.
    - Fixed paths are registered before `/{resource_id}` so they are not
      shadowed.
    - Downloads use `Content-Disposition: attachment`; viewing uses `inline`.
      A material whose content is an external link answers with a redirect.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Request

from backend.content.kinds import KIND_ASSIGNMENT, KIND_BOOK, KIND_MATERIAL, KIND_PRAYER, KIND_SERMON
from backend.content.service import AssetDelivery
from backend.web.http_utils import (
    asset_response,
    current_actor,
    private_json,
    read_payload,
    redirect_response,
    require_actor,
)
from backend.web.wiring import get_platform

_LIST_PARAMS = ("category", "type", "search", "page", "limit", "sort")


@dataclass(frozen=True)
class AssetRoute:
    path: str
    slot: str
    download: bool = False


@dataclass(frozen=True)
class KindRoutes:
    kind: str
    prefix: str
    owner_path: Optional[str] = None
    assets: Tuple[AssetRoute, ...] = ()
    catalog: bool = False


KIND_ROUTES = (
    KindRoutes(
        kind=KIND_SERMON,
        prefix="/api/sermons",
        owner_path="author",
        assets=(AssetRoute("image", "image"), AssetRoute("audio", "audio")),
    ),
    KindRoutes(
        kind=KIND_PRAYER,
        prefix="/api/prayers",
        owner_path="author",
        assets=(AssetRoute("image", "image"),),
    ),
    KindRoutes(
        kind=KIND_BOOK,
        prefix="/api/books",
        owner_path="uploader",
        assets=(AssetRoute("cover", "cover_image"), AssetRoute("download", "pdf_file", download=True)),
    ),
    KindRoutes(
        kind=KIND_MATERIAL,
        prefix="/api/materials",
        assets=(
            AssetRoute("file", "file_url"),
            AssetRoute("download", "file_url", download=True),
            AssetRoute("thumbnail", "thumbnail_url"),
        ),
        catalog=True,
    ),
    KindRoutes(
        kind=KIND_ASSIGNMENT,
        prefix="/api/assignments",
        assets=(AssetRoute("download", "file_url", download=True),),
    ),
)


def list_criteria(request: Request) -> Dict[str, Any]:
    """Query string to service criteria; `tags` may repeat or be a JSON array."""
    params = request.query_params
    criteria: Dict[str, Any] = {k: params.get(k) for k in _LIST_PARAMS if params.get(k) is not None}
    tags = params.getlist("tags")
    if len(tags) == 1 and tags[0].lstrip().startswith("["):
        criteria["tags"] = tags[0]
    elif tags:
        criteria["tags"] = tags
    return criteria


def _deliver(delivery: AssetDelivery, *, download: bool):
    if delivery.redirect_url:
        return redirect_response(delivery.redirect_url)
    return asset_response(delivery.asset, disposition="attachment" if download else "inline")


def _add_asset_route(router: APIRouter, spec: KindRoutes, route: AssetRoute) -> None:
    async def read_asset(request: Request, resource_id: str):
        service = get_platform().resource(spec.kind)
        delivery = await asyncio.to_thread(
            service.read_asset, current_actor(request), resource_id, route.slot, download=route.download
        )
        return _deliver(delivery, download=route.download)

    read_asset.__name__ = f"{spec.kind}_{route.path}"
    router.add_api_route(f"{spec.prefix}/{{resource_id}}/{route.path}", read_asset, methods=["GET"])


def build_kind_router(spec: KindRoutes) -> APIRouter:
    """Routes for one content kind; fixed paths first."""
    router = APIRouter(tags=[spec.kind.capitalize()])

    async def list_resources(request: Request):
        service = get_platform().resource(spec.kind)
        return private_json(await asyncio.to_thread(service.list, list_criteria(request), current_actor(request)))

    router.add_api_route(spec.prefix, list_resources, methods=["GET"], name=f"list_{spec.kind}")

    if spec.catalog:
        async def list_categories():
            return private_json({"categories": get_platform().resource(spec.kind).categories()})

        async def list_tags():
            return private_json({"tags": await asyncio.to_thread(get_platform().resource(spec.kind).tags)})

        router.add_api_route(f"{spec.prefix}/categories", list_categories, methods=["GET"])
        router.add_api_route(f"{spec.prefix}/tags", list_tags, methods=["GET"])

    if spec.owner_path:
        async def list_by_owner(request: Request, owner_id: str):
            service = get_platform().resource(spec.kind)
            page = await asyncio.to_thread(
                service.list_by_owner, owner_id, list_criteria(request), current_actor(request)
            )
            return private_json(page)

        router.add_api_route(
            f"{spec.prefix}/{spec.owner_path}/{{owner_id}}",
            list_by_owner,
            methods=["GET"],
            name=f"list_{spec.kind}_by_{spec.owner_path}",
        )

    async def create_resource(request: Request):
        actor = require_actor(request)
        fields, uploads = await read_payload(request)
        created = await asyncio.to_thread(get_platform().resource(spec.kind).create, actor, fields, uploads)
        return private_json({spec.kind: created}, status_code=201)

    router.add_api_route(spec.prefix, create_resource, methods=["POST"], name=f"create_{spec.kind}")

    async def get_resource(request: Request, resource_id: str):
        resource = await asyncio.to_thread(
            get_platform().resource(spec.kind).get_one, resource_id, current_actor(request)
        )
        return private_json({spec.kind: resource})

    async def update_resource(request: Request, resource_id: str):
        actor = require_actor(request)
        fields, uploads = await read_payload(request)
        updated = await asyncio.to_thread(
            get_platform().resource(spec.kind).update, actor, resource_id, fields, uploads
        )
        return private_json({spec.kind: updated})

    async def delete_resource(request: Request, resource_id: str):
        actor = require_actor(request)
        await asyncio.to_thread(get_platform().resource(spec.kind).delete, actor, resource_id)
        return private_json({"status": "deleted"})

    router.add_api_route(f"{spec.prefix}/{{resource_id}}", get_resource, methods=["GET"], name=f"get_{spec.kind}")
    router.add_api_route(
        f"{spec.prefix}/{{resource_id}}", update_resource, methods=["PATCH", "PUT"], name=f"update_{spec.kind}"
    )
    router.add_api_route(
        f"{spec.prefix}/{{resource_id}}", delete_resource, methods=["DELETE"], name=f"delete_{spec.kind}"
    )
    for route in spec.assets:
        _add_asset_route(router, spec, route)
    return router


__all__ = ["KIND_ROUTES", "KindRoutes", "build_kind_router", "list_criteria"]
