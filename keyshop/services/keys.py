# keyshop/services/keys.py
"""Admin key import/revocation and the single place keys get decrypted."""
from dataclasses import dataclass
from typing import Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from keyshop.db import atomic
from keyshop.errors import ErrorKind, ShopError
from keyshop.models import KeyStatus, LicenseKey, Product, now_utc
from keyshop.vault import KeyVault, normalize

logger = structlog.get_logger(__name__)

MAX_IMPORT_BATCH = 1000


@dataclass
class ImportResult:
    imported: int
    duplicates: int
    total: int


def import_keys(db: Session, vault: KeyVault, product_id: int, raw_keys: List[str]) -> ImportResult:
    """
    Bulk import for one product.

    Keys are trimmed, blanks dropped and the batch de-duplicated. A key whose
    fingerprint is already stored for the product is counted as a duplicate
    and skipped; the rest are encrypted and inserted as ``available``.
    """
    if len(raw_keys) > MAX_IMPORT_BATCH:
        raise ShopError(ErrorKind.VALIDATION, f"At most {MAX_IMPORT_BATCH} keys per import")

    by_fingerprint: Dict[str, str] = {}
    for raw in raw_keys:
        key = normalize(raw)
        if key:
            by_fingerprint.setdefault(vault.fingerprint(key), key)

    if not by_fingerprint:
        raise ShopError(ErrorKind.VALIDATION, "No valid keys provided")

    with atomic(db):
        if db.get(Product, product_id) is None:
            raise ShopError(ErrorKind.NOT_FOUND, f"Product {product_id} not found")

        existing = set(
            db.execute(
                select(LicenseKey.fingerprint).where(
                    LicenseKey.product_id == product_id,
                    LicenseKey.fingerprint.in_(list(by_fingerprint)),
                )
            ).scalars()
        )
        fresh = [(fp, key) for fp, key in by_fingerprint.items() if fp not in existing]
        created_at = now_utc()
        db.add_all(
            LicenseKey(
                product_id=product_id,
                encrypted_value=vault.encrypt(key),
                fingerprint=fp,
                status=KeyStatus.AVAILABLE,
                created_at=created_at,
            )
            for fp, key in fresh
        )

    result = ImportResult(imported=len(fresh), duplicates=len(existing), total=len(by_fingerprint))
    logger.info(
        "license_keys_imported",
        product_id=product_id,
        imported=result.imported,
        duplicates=result.duplicates,
    )
    return result


def revoke_key(db: Session, key_id: int, reason: Optional[str] = None) -> LicenseKey:
    """available/sold -> revoked. Revoked is terminal; a refund never brings it back."""
    with atomic(db):
        key = db.execute(
            select(LicenseKey).where(LicenseKey.id == key_id).with_for_update()
        ).scalar_one_or_none()
        if key is None:
            raise ShopError(ErrorKind.NOT_FOUND, f"License key {key_id} not found")
        if key.status == KeyStatus.REVOKED:
            raise ShopError(ErrorKind.VALIDATION, "License key is already revoked", key_id=key_id)

        db.execute(
            update(LicenseKey)
            .where(LicenseKey.id == key_id, LicenseKey.status != KeyStatus.REVOKED)
            .values(status=KeyStatus.REVOKED, revoked_at=now_utc(), revoke_reason=reason)
        )
        db.refresh(key)

    logger.info("license_key_revoked", key_id=key_id, order_id=str(key.order_id) if key.order_id else None)
    return key


def sold_keys(db: Session, order_id) -> List[LicenseKey]:
    return list(
        db.execute(
            select(LicenseKey)
            .where(LicenseKey.order_id == order_id, LicenseKey.status == KeyStatus.SOLD)
            .order_by(LicenseKey.id)
        ).scalars()
    )


def decrypt_for_delivery(vault: KeyVault, keys: List[LicenseKey]) -> List[Dict]:
    """Decrypt only the keys of one order, at the moment they are handed over."""
    return [
        {"id": k.id, "product_id": k.product_id, "key": vault.decrypt(k.encrypted_value)}
        for k in keys
    ]
