from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request
from typing import Literal
import logging

from fm4mirror.startup import Services, get_services


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["broadcasts"])


def base_url(request: Request) -> str:
    return str(request.base_url).rstrip('/')


@router.get("/live")
async def get_live(request: Request, services: Services = Depends(get_services)):
    """Laufende Sendung(en) aus der DB, sonst die nächste"""
    live = services.transformer.transform_live_data(base_url(request))
    if not live:
        raise HTTPException(status_code=404, detail="No live broadcast found")
    return live


@router.get("/broadcasts")
async def list_broadcasts(request: Request, services: Services = Depends(get_services)):
    """Alle gespeicherten Sendungen, gruppiert nach Tag (neueste zuerst)"""
    broadcasts = services.store.get_all_broadcasts(limit=10000)
    return services.transformer.transform_broadcasts_list(broadcasts, base_url(request))


@router.get("/broadcasts/{day}")
async def broadcasts_for_day(request: Request, day: int = Path(..., ge=19700101, le=29991231),
                             services: Services = Depends(get_services)):
    broadcasts = services.store.get_broadcasts_by_date_range(day, day)
    days = services.transformer.transform_broadcasts_list(broadcasts, base_url(request))
    return days[0] if days else {"day": day, "broadcasts": []}


@router.get("/broadcast/{program_key}/{day}")
async def get_broadcast(request: Request,
                        program_key: str = Path(..., pattern=r'^[A-Za-z0-9_-]{1,50}$'),
                        day: int = Path(..., ge=19700101, le=29991231),
                        services: Services = Depends(get_services)):
    broadcast = services.store.get_broadcast(day, program_key)
    if not broadcast:
        raise HTTPException(status_code=404, detail=f"Broadcast not found: {program_key}/{day}")
    return services.transformer.transform_broadcast(broadcast, base_url(request))


@router.get("/program-keys")
async def list_program_keys(services: Services = Depends(get_services)):
    return [
        {
            "programKey": entry.program_key,
            "title": entry.title,
            "lastSeen": entry.last_seen.isoformat() if entry.last_seen else None,
        }
        for entry in services.store.get_all_program_keys()
    ]


@router.get("/item/{item_id}")
async def get_item(request: Request, item_id: int, services: Services = Depends(get_services)):
    """Item per ORF-ID (nicht DB-ID)"""
    item = services.store.get_item_by_item_id(item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Broadcast item not found")
    broadcast = services.store.get_broadcast_by_id(item.broadcast_id)
    return services.transformer.transform_broadcast_item(item, base_url(request), broadcast)


def _item_result(services: Services, item, url: str) -> dict:
    broadcast = services.store.get_broadcast_by_id(item.broadcast_id)
    result = services.transformer.transform_broadcast_item(item, url, broadcast)
    if broadcast:
        result["broadcast"] = {
            "id": broadcast.id,
            "title": broadcast.title,
            "programKey": broadcast.program_key,
            "broadcastDay": broadcast.broadcast_day,
        }
    return result


@router.get("/search")
async def search(request: Request,
                 q: str = Query(..., min_length=2, max_length=200),
                 type: Literal["all", "broadcasts", "items"] = "all",
                 limit: int = Query(25, ge=1, le=100),
                 offset: int = Query(0, ge=0),
                 services: Services = Depends(get_services)):
    """Volltextsuche über Sendungen und Items"""
    store = services.store
    url = base_url(request)
    query = q.strip()

    if type == "broadcasts":
        results = [
            services.transformer.transform_broadcast(b, url, include_items=False)
            for b in store.search_broadcasts(query, limit, offset)
        ]
        total = store.count_search_broadcasts(query)
    elif type == "items":
        results = [_item_result(services, item, url) for item in store.search_items(query, limit, offset)]
        total = store.count_search_items(query)
    else:
        broadcasts = [
            {**services.transformer.transform_broadcast(b, url, include_items=False), "_type": "broadcast"}
            for b in store.search_broadcasts(query, limit)
        ]
        items = [
            {**_item_result(services, item, url), "_type": "item"}
            for item in store.search_items(query, limit)
        ]
        broadcast_count = store.count_search_broadcasts(query)
        item_count = store.count_search_items(query)
        return {
            "query": query,
            "type": "all",
            "results": (broadcasts + items)[:limit],
            "counts": {
                "broadcasts": broadcast_count,
                "items": item_count,
                "total": broadcast_count + item_count,
            },
            "limit": limit,
        }

    return {
        "query": query,
        "type": type,
        "results": results,
        "total": total,
        "limit": limit,
        "offset": offset,
    }
