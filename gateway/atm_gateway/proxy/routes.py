"""
Proxy Routes - Upstream API Forwarding
======================================

Thin pass-throughs to the two external APIs the frontend uses:

- POST /api/chat: banking assistant replies from a chat-completion endpoint
  (requires an authenticated caller)
- GET /api/stock/...: quotes and company profiles from Finnhub

Upstream failures (timeouts, network errors, non-2xx answers, malformed
bodies) raise UpstreamUnavailable, which the application renders as a 500
with the upstream detail. Nothing is retried.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..auth.middleware import require_identity
from ..config import Settings
from ..exceptions import UpstreamUnavailable
from ..models import ChatRequest, ChatResponse, ErrorResponse, Identity, StockSummary

logger = logging.getLogger(__name__)

proxy_router = APIRouter(
    prefix="/api",
    tags=["proxy"],
    responses={500: {"model": ErrorResponse, "description": "Upstream API unavailable"}},
)


BANKING_SYSTEM_PROMPT = (
    "You are Habo AI, a helpful banking assistant for Habo Banking. You help customers "
    "with banking-related questions, account information, deposits, withdrawals, transfers, "
    "loans, investments, and general banking services. Be friendly, professional, and "
    "helpful. Keep responses concise but informative."
)

MAJOR_STOCKS = {
    "NVDA": "nvidia",
    "AAPL": "apple",
    "2222.SR": "saudiAramco",
    "COST": "costco",
    "AMZN": "amazon",
    "MSFT": "microsoft",
    "GOOGL": "google",
}


# ============================================================================
# Dependencies
# ============================================================================

def get_upstream_client(request: Request) -> httpx.AsyncClient:
    """
    Shared HTTP client for upstream calls, created by the application lifespan.

    Raises:
        HTTPException: 503 if the client has not been created
    """
    client = getattr(request.app.state, "upstream_client", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Upstream client not available",
        )
    return client


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


# ============================================================================
# Upstream call helper
# ============================================================================

async def fetch_upstream_json(
    client: httpx.AsyncClient,
    upstream: str,
    method: str,
    url: str,
    **kwargs: Any,
) -> Any:
    """
    Perform one upstream request and decode its JSON body.

    Raises:
        UpstreamUnavailable: On timeout, network error, non-2xx or invalid JSON
    """
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise UpstreamUnavailable(upstream, "request timed out") from e
    except httpx.HTTPError as e:
        raise UpstreamUnavailable(upstream, f"request failed: {str(e) or type(e).__name__}") from e

    if not response.is_success:
        raise UpstreamUnavailable(
            upstream,
            f"{upstream} API error: {response.status_code} - {response.reason_phrase}",
            status_code=response.status_code,
        )

    try:
        return response.json()
    except ValueError as e:
        raise UpstreamUnavailable(upstream, "invalid JSON in response") from e


# ============================================================================
# Chat
# ============================================================================

@proxy_router.post("/chat", response_model=ChatResponse)
async def proxy_chat(
    chat_request: ChatRequest,
    identity: Identity = Depends(require_identity),
    settings: Settings = Depends(get_app_settings),
    client: httpx.AsyncClient = Depends(get_upstream_client),
):
    """
    Answer a banking question through the chat-completion API.

    Returns:
        {"message": <assistant reply>}
    """
    if not settings.DEEPSEEK_API_KEY:
        raise UpstreamUnavailable("DeepSeek", "DEEPSEEK_API_KEY not configured")

    logger.info(
        "Proxying chat request",
        extra={"user_id": identity.subject, "message_length": len(chat_request.message)},
    )

    data = await fetch_upstream_json(
        client,
        "DeepSeek",
        "POST",
        f"{settings.DEEPSEEK_BASE_URL.rstrip('/')}/chat/completions",
        headers={"Authorization": f"Bearer {settings.DEEPSEEK_API_KEY}"},
        json={
            "model": settings.DEEPSEEK_MODEL,
            "messages": [
                {"role": "system", "content": BANKING_SYSTEM_PROMPT},
                {"role": "user", "content": chat_request.message},
            ],
            "max_tokens": 500,
            "temperature": 0.7,
        },
    )

    try:
        reply = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as e:
        raise UpstreamUnavailable("DeepSeek", "unexpected response shape") from e

    return ChatResponse(message=reply)


# ============================================================================
# Stock market
# ============================================================================

def _finnhub_params(settings: Settings, symbol: str) -> Dict[str, str]:
    return {"symbol": symbol, "token": settings.FINNHUB_API_KEY or ""}


def build_stock_summary(
    quote: Optional[Dict[str, Any]], profile: Optional[Dict[str, Any]], symbol: str
) -> Optional[StockSummary]:
    """
    Combine a Finnhub quote and company profile.

    Returns:
        StockSummary, or None if either part is missing or incomplete
    """
    if not quote or not profile:
        logger.warning(f"Missing data for {symbol}: quote={bool(quote)}, profile={bool(profile)}")
        return None

    if not all(quote.get(field) for field in ("c", "pc", "h", "l", "v")):
        logger.warning(f"Invalid quote data for {symbol}")
        return None

    if not profile.get("name") or not profile.get("ticker"):
        logger.warning(f"Invalid profile data for {symbol}")
        return None

    name = profile["name"]
    industry = profile.get("finnhubIndustry")
    if industry:
        description = f"{name} is a company in the {industry} industry."
        if profile.get("currency"):
            description += f" Trading in {profile['currency']}."
    else:
        description = f"{name} is a publicly traded company."

    return StockSummary(
        symbol=profile["ticker"],
        name=name,
        price=quote["c"],
        previousClose=quote["pc"],
        high=quote["h"],
        low=quote["l"],
        volume=quote["v"],
        description=description,
    )


@proxy_router.get("/stock/quote/{symbol}")
async def stock_quote(
    symbol: str,
    settings: Settings = Depends(get_app_settings),
    client: httpx.AsyncClient = Depends(get_upstream_client),
):
    """Real-time quote for one symbol, passed through unchanged."""
    return await fetch_upstream_json(
        client,
        "Finnhub",
        "GET",
        f"{settings.FINNHUB_BASE_URL.rstrip('/')}/quote",
        params=_finnhub_params(settings, symbol),
    )


@proxy_router.get("/stock/profile/{symbol}")
async def stock_profile(
    symbol: str,
    settings: Settings = Depends(get_app_settings),
    client: httpx.AsyncClient = Depends(get_upstream_client),
):
    """Company profile for one symbol, passed through unchanged."""
    return await fetch_upstream_json(
        client,
        "Finnhub",
        "GET",
        f"{settings.FINNHUB_BASE_URL.rstrip('/')}/stock/profile2",
        params=_finnhub_params(settings, symbol),
    )


@proxy_router.get("/stock/major-stocks", response_model=Dict[str, StockSummary])
async def major_stocks(
    settings: Settings = Depends(get_app_settings),
    client: httpx.AsyncClient = Depends(get_upstream_client),
):
    """
    Quotes and profiles for a fixed list of large companies.

    Symbols whose quote or profile cannot be fetched are left out.
    """
    base_url = settings.FINNHUB_BASE_URL.rstrip("/")

    async def fetch_or_none(path: str, symbol: str) -> Optional[Dict[str, Any]]:
        try:
            return await fetch_upstream_json(
                client, "Finnhub", "GET", f"{base_url}{path}",
                params=_finnhub_params(settings, symbol),
            )
        except UpstreamUnavailable as e:
            logger.error(f"Error fetching {path} for {symbol}: {e.detail}")
            return None

    symbols = list(MAJOR_STOCKS)
    quotes = await asyncio.gather(*(fetch_or_none("/quote", s) for s in symbols))
    profiles = await asyncio.gather(*(fetch_or_none("/stock/profile2", s) for s in symbols))

    stock_data: Dict[str, StockSummary] = {}
    for symbol, quote, profile in zip(symbols, quotes, profiles):
        summary = build_stock_summary(quote, profile, symbol)
        if summary is not None:
            stock_data[MAJOR_STOCKS[symbol]] = summary

    logger.info(f"Successfully processed {len(stock_data)} stocks")
    return stock_data
