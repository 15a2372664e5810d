"""Public subscription tier listing, priced in the caller's currency."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.engine import get_session
from src.services.tier_catalog import (
    TierCatalog, currency_for_country, detect_country, parse_currency, serialize_tier,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["tiers"])


async def _list_tiers(request: Request, currency: Optional[str], session: AsyncSession) -> dict:
    country = None
    if currency:
        selected = parse_currency(currency)
    else:
        country = detect_country(request.headers)
        selected = currency_for_country(country)

    tiers = await TierCatalog(session).list_tiers()
    return {
        "currency": selected.value,
        "country": country,
        "data": [serialize_tier(t, selected) for t in tiers],
    }


@router.get("/subscriptions/tiers")
async def list_tiers(
    request: Request,
    currency: Optional[str] = Query(None),
    session: AsyncSession = Depends(get_session),
):
    return await _list_tiers(request, currency, session)


@router.get("/public/subscription/tiers")
async def list_public_tiers(
    request: Request,
    currency: Optional[str] = Query(None),
    session: AsyncSession = Depends(get_session),
):
    """Unauthenticated pricing page feed."""
    return await _list_tiers(request, currency, session)
