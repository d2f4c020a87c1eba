"""
Shopify cart relay endpoints.

  POST /shopify/webhooks/cart-updated  – signed webhook from the store
  GET  /shopify/cart-events            – SSE push channel for the embedded app
  GET  /shopify/cart-status            – pull the latest known cart
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from skinscan.core.exceptions import ProtocolError, SignatureError
from skinscan.core.logging import get_logger
from skinscan.services.cart_relay_service import CartUpdateRelay, get_cart_relay

router = APIRouter(prefix="/shopify", tags=["Shopify"])
logger = get_logger("shopify")

SIGNATURE_HEADER = "x-shopify-hmac-sha256"
SHOP_HEADER = "x-shopify-shop-domain"


@router.post("/webhooks/cart-updated")
async def cart_updated_webhook(
    request: Request,
    relay: CartUpdateRelay = Depends(get_cart_relay),
):
    """
    Receive a cart-updated webhook.
    The signature is checked against the raw body before anything is parsed or stored.
    """
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    shop = request.headers.get(SHOP_HEADER)

    try:
        if not shop:
            # Signature is checked before the shop header
            relay.verify(payload, signature)
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": "Bad Request", "message": "Missing shop domain header"},
            )
        update = await relay.ingest(payload, signature, shop)
    except SignatureError as e:
        logger.warning("Rejected cart webhook from %s: %s", shop or "unknown shop", e.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Unauthorized", "message": "Invalid webhook signature"},
        )
    except ProtocolError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "Bad Request", "message": e.message},
        )

    return {"success": True, "shop": update.shop_key, "itemCount": update.snapshot.item_count}


@router.get("/cart-events")
async def cart_events(
    shop: str | None = None,
    relay: CartUpdateRelay = Depends(get_cart_relay),
):
    """Server-Sent Events stream of cart updates for one shop."""
    if not shop:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "Bad Request", "message": "Shop parameter required"},
        )
    return StreamingResponse(
        relay.stream(shop),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "Access-Control-Allow-Origin": "*",
        },
    )


@router.get("/cart-status")
async def cart_status(
    shop: str | None = None,
    relay: CartUpdateRelay = Depends(get_cart_relay),
):
    """Latest cart snapshot received for a shop, for clients that cannot hold a stream open."""
    if not shop:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "Bad Request", "message": "Shop parameter required"},
        )

    update = await relay.latest(shop)
    if update is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "Not Found", "message": "No cart update found for this shop"},
        )
    return {
        "success": True,
        "cart": update.snapshot.to_wire(),
        "receivedAt": update.received_at.isoformat(),
    }
