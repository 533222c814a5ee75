"""
Cart snapshot decoding and line-item resolution.

Provider metadata may carry the cart as a base64-encoded JSON array of
compact records ``{"id", "n", "p", "q"?, "cat"?}``. Build components live
under ``components`` (one of each); cart lines live under ``cart``.
"""
import base64
import binascii
import json
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog
from pydantic import ValidationError

from order_reconciliation.core.models import CartItem, LineItem, to_major

logger = structlog.get_logger(__name__)

# Checked in order; components win over cart lines
MANIFEST_KEYS = ("components", "cart")


class ManifestDecodeError(ValueError):
    """Raised when an encoded cart manifest cannot be decoded."""


def encode_manifest(items: Sequence[CartItem]) -> str:
    """Encode cart items into the compact base64 manifest format."""
    records = []
    for item in items:
        record: Dict[str, Any] = {"id": item.id, "n": item.name, "p": item.price}
        if item.quantity != 1:
            record["q"] = item.quantity
        if item.category:
            record["cat"] = item.category
        records.append(record)
    payload = json.dumps(records, separators=(",", ":"))
    return base64.b64encode(payload.encode("utf-8")).decode("ascii")


def decode_manifest(encoded: str, force_single_quantity: bool = False) -> List[CartItem]:
    """
    Decode a base64 JSON manifest into cart items.

    Args:
        encoded: Base64 text as stored in provider metadata
        force_single_quantity: Ignore ``q`` (component manifests)

    Raises:
        ManifestDecodeError: If the payload is not a valid manifest
    """
    try:
        raw = base64.b64decode(encoded, validate=False)
        records = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ManifestDecodeError(f"Undecodable manifest: {e}") from e

    if not isinstance(records, list):
        raise ManifestDecodeError("Manifest is not a list")

    items = []
    for record in records:
        if not isinstance(record, dict):
            raise ManifestDecodeError("Manifest entry is not an object")
        try:
            items.append(
                CartItem(
                    id=str(record.get("id", "")),
                    name=record.get("n") or record.get("name") or "",
                    price=record.get("p", record.get("price", 0)),
                    quantity=1 if force_single_quantity else record.get("q", 1),
                    category=record.get("cat"),
                    image=record.get("img"),
                )
            )
        except ValidationError as e:
            raise ManifestDecodeError(f"Invalid manifest entry: {e}") from e
    return items


def cart_from_metadata(metadata: Mapping[str, Any]) -> Optional[List[CartItem]]:
    """
    Extract the first decodable manifest from provider metadata.

    Structured lists (bank transfer requests store the cart as-is) are
    accepted alongside encoded strings. A manifest that fails to decode is
    logged and skipped.
    """
    for key in MANIFEST_KEYS:
        value = metadata.get(key)
        if not value:
            continue
        try:
            if isinstance(value, str):
                items = decode_manifest(value, force_single_quantity=key == "components")
            elif isinstance(value, list):
                items = [CartItem.model_validate(entry) for entry in value]
            else:
                raise ManifestDecodeError(f"Unsupported manifest type {type(value).__name__}")
        except (ManifestDecodeError, ValidationError) as e:
            logger.warning("cart_manifest_ignored", key=key, error=str(e))
            continue
        if items:
            return items
    return None


def resolve_line_items(
    cart_snapshot: Optional[Sequence[CartItem]],
    metadata: Mapping[str, Any],
    amount_minor: int,
    default_product_id: str = "custom_build",
    default_name: str = "Custom PC Build",
) -> List[LineItem]:
    """
    Build order lines: live cart, else metadata manifest, else one synthetic
    item priced at the confirmed total. Never returns an empty list.
    """
    if cart_snapshot:
        return [LineItem.from_cart_item(item) for item in cart_snapshot]

    decoded = cart_from_metadata(metadata)
    if decoded:
        return [LineItem.from_cart_item(item) for item in decoded]

    logger.info("line_items_fallback", amount_minor=amount_minor)
    return [
        LineItem(
            product_id=default_product_id,
            name=default_name,
            quantity=1,
            unit_price=to_major(amount_minor),
        )
    ]
