"""Catalog and order synchronizer.

Two entry points converge on the same upsert routines:
- webhook dispatch: single product/order payloads
- poll sync: paginated pulls through PlatformClient

Upsert rules:
- Products match on (merchant_id, <platform>_product_id); found -> update mutable
  fields, missing -> create with a unique slug
- Category inference on create/update is best-effort and never blocks the write
- Orders match on the unique <platform>_order_id column
- Upstream deletes only deactivate products

`repair_categories` is a separate maintenance pass over active products that
still have no category.
"""

from dataclasses import dataclass, field
import json
import logging
import re
from typing import Any, Callable, Mapping

import httpx
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_engine.models import Category, Order, Product
from commerce_engine.services.credentials import Credentials, get_credentials
from commerce_engine.services.errors import AuthError
from commerce_engine.services.oauth import make_refresh_callback
from commerce_engine.services.platform_client import Envelope, PlatformClient, RefreshCallback, RetryPolicy
from commerce_engine.services.platforms import (
    NormalizedOrder,
    Platform,
    dig,
    first_str,
    first_value,
    to_float,
    to_str,
)
from commerce_engine.settings import Settings, get_settings
from commerce_engine.stores.postgres import get_session

logger = logging.getLogger("uvicorn.error")

SLUG_MAX_LENGTH = 240
PRODUCTS_PAGE_SIZE = 50
MAX_SYNC_PAGES = 200

ZID_ACTIVE_STATUSES = frozenset({"active", "published", "available"})


def slugify(text: str) -> str:
    """Lowercase, dash-separated slug that keeps Arabic letters."""
    value = str(text or "").lower().strip()
    value = re.sub(r"\s+", "-", value)
    value = re.sub(r"[^\w-]+", "", value)
    value = re.sub(r"-{2,}", "-", value)
    return value.strip("-")


def _localized(value: Any) -> str | None:
    """Zid sends names as {"ar": ..., "en": ...}; prefer English."""
    if isinstance(value, Mapping):
        for key in ("en", "ar"):
            text = to_str(value.get(key))
            if text:
                return text
        for item in value.values():
            text = to_str(item)
            if text:
                return text
        return None
    return to_str(value)


# ============================================================
# Normalized catalog payloads
# ============================================================


@dataclass
class NormalizedCategory:
    external_id: str
    name: str
    parent_external_id: str | None = None


@dataclass
class NormalizedProduct:
    external_id: str
    title: str
    description: str | None = None
    price: float = 0.0
    regular_price: float | None = None
    currency: str = "SAR"
    quantity: int | None = None
    image_url: str | None = None
    product_url: str | None = None
    is_active: bool = True
    categories: list[NormalizedCategory] = field(default_factory=list)


def _categories(raw: Any) -> list[NormalizedCategory]:
    if not isinstance(raw, list):
        return []
    out: list[NormalizedCategory] = []
    for item in raw:
        if not isinstance(item, Mapping):
            continue
        ext_id = to_str(item.get("id"))
        name = _localized(item.get("name"))
        if ext_id and name:
            out.append(
                NormalizedCategory(
                    external_id=ext_id,
                    name=name,
                    parent_external_id=to_str(first_value(item, ("parent_id", "parent.id"))),
                )
            )
    return out


def _quantity(data: Mapping[str, Any]) -> int | None:
    direct = first_value(data, ("quantity", "stock_quantity"))
    if direct is not None:
        value = to_float(direct)
        return int(value) if value is not None else None
    skus = data.get("skus")
    if isinstance(skus, list) and skus:
        total = 0
        for sku in skus:
            if isinstance(sku, Mapping):
                total += int(to_float(sku.get("stock_quantity", sku.get("quantity")), 0) or 0)
        return total
    return None


def _effective_price(data: Mapping[str, Any]) -> float:
    """Sale price when one is set (platforms send 0 for "no sale"), else the list price."""
    sale = to_float(data.get("sale_price"))
    if sale:
        return sale
    return to_float(data.get("price"), 0.0) or 0.0


def normalize_salla_product(data: Mapping[str, Any]) -> NormalizedProduct | None:
    external_id = to_str(data.get("id"))
    title = _localized(data.get("name"))
    if not external_id or not title:
        return None
    status = (to_str(data.get("status")) or "").lower()
    available = data.get("is_available")
    price = _effective_price(data)
    regular = to_float(data.get("regular_price")) or to_float(data.get("price"))
    return NormalizedProduct(
        external_id=external_id,
        title=title,
        description=to_str(data.get("description")),
        price=price or 0.0,
        regular_price=regular if regular and regular != price else None,
        currency=(first_str(data, ("price.currency", "currency")) or "SAR").upper(),
        quantity=_quantity(data),
        image_url=first_str(data, ("main_image", "thumbnail", "image.url")) or _first_image(data.get("images")),
        product_url=first_str(data, ("urls.customer", "url")),
        is_active=(available is not False) and status != "hidden",
        categories=_categories(data.get("categories")),
    )


def normalize_zid_product(data: Mapping[str, Any]) -> NormalizedProduct | None:
    external_id = to_str(data.get("id"))
    title = _localized(data.get("name"))
    if not external_id or not title:
        return None
    status = (to_str(data.get("status")) or "").lower()
    published = data.get("is_published")
    if status:
        active = status in ZID_ACTIVE_STATUSES and published is not False
    else:
        active = published is not False
    price = _effective_price(data)
    regular = to_float(data.get("price"))
    return NormalizedProduct(
        external_id=external_id,
        title=title,
        description=_localized(data.get("description")),
        price=price or 0.0,
        regular_price=regular if regular and regular != price else None,
        currency=(to_str(data.get("currency")) or "SAR").upper(),
        quantity=_quantity(data),
        image_url=_first_image(data.get("images")),
        product_url=first_str(data, ("html_url", "url")),
        is_active=active,
        categories=_categories(data.get("categories")),
    )


def _first_image(images: Any) -> str | None:
    if not isinstance(images, list):
        return None
    for image in images:
        if isinstance(image, str) and image:
            return image
        if isinstance(image, Mapping):
            url = first_str(image, ("url", "image.full_size", "image.large", "image.medium", "original"))
            if url:
                return url
    return None


PRODUCT_NORMALIZERS: dict[Platform, Callable[[Mapping[str, Any]], NormalizedProduct | None]] = {
    Platform.SALLA: normalize_salla_product,
    Platform.ZID: normalize_zid_product,
}


def normalize_product(platform: Platform, data: Mapping[str, Any]) -> NormalizedProduct | None:
    return PRODUCT_NORMALIZERS[platform](data)


def normalize_category(data: Mapping[str, Any]) -> NormalizedCategory | None:
    found = _categories([data])
    return found[0] if found else None


# ============================================================
# Lookups
# ============================================================


def _product_ext_column(platform: Platform):
    return Product.salla_product_id if platform is Platform.SALLA else Product.zid_product_id


def _category_ext_column(platform: Platform):
    return Category.salla_category_id if platform is Platform.SALLA else Category.zid_category_id


def _order_ext_column(platform: Platform):
    return Order.salla_order_id if platform is Platform.SALLA else Order.zid_order_id


async def find_product(
    session: AsyncSession,
    merchant_id: int,
    platform: Platform,
    external_id: str,
) -> Product | None:
    result = await session.execute(
        select(Product).where(
            Product.merchant_id == merchant_id,
            _product_ext_column(platform) == external_id,
        )
    )
    return result.scalar_one_or_none()


async def find_order(session: AsyncSession, platform: Platform, external_id: str) -> Order | None:
    result = await session.execute(select(Order).where(_order_ext_column(platform) == external_id))
    return result.scalar_one_or_none()


async def _unique_slug(session: AsyncSession, model: type[Product] | type[Category], base: str) -> str:
    """Return `base`, or `base-2`, `base-3`, ... whichever is free."""
    base = base[:SLUG_MAX_LENGTH].strip("-") or "item"
    result = await session.execute(
        select(model.slug).where(or_(model.slug == base, model.slug.like(f"{base}-%")))
    )
    taken = set(result.scalars().all())
    if base not in taken:
        return base
    suffix = 2
    while f"{base}-{suffix}" in taken:
        suffix += 1
    return f"{base}-{suffix}"


# ============================================================
# Categories
# ============================================================


async def upsert_category(
    session: AsyncSession,
    merchant_id: int,
    platform: Platform,
    category: NormalizedCategory,
) -> Category:
    """Create or rename a category by its platform external id."""
    column = _category_ext_column(platform)
    result = await session.execute(
        select(Category).where(Category.merchant_id == merchant_id, column == category.external_id)
    )
    row = result.scalar_one_or_none()

    parent_id = None
    if category.parent_external_id and category.parent_external_id != "0":
        parent = await session.execute(
            select(Category.id).where(
                Category.merchant_id == merchant_id,
                column == category.parent_external_id,
            )
        )
        parent_id = parent.scalar_one_or_none()

    if row is not None:
        row.name = category.name
        row.is_active = True
        if parent_id is not None:
            row.parent_id = parent_id
        return row

    slug = await _unique_slug(
        session,
        Category,
        f"{platform.value}-{merchant_id}-{category.external_id}-{slugify(category.name)}",
    )
    row = Category(
        merchant_id=merchant_id,
        parent_id=parent_id,
        name=category.name,
        slug=slug,
        is_active=True,
    )
    setattr(row, column.key, category.external_id)
    session.add(row)
    await session.flush()
    return row


async def infer_category_id(
    session: AsyncSession,
    merchant_id: int,
    platform: Platform,
    product: NormalizedProduct,
) -> int | None:
    """Category for the product: its first platform category, created on the fly.

    None when the payload carries no categories; repair_categories picks those up later.
    """
    if not product.categories:
        return None
    row = await upsert_category(session, merchant_id, platform, product.categories[0])
    return row.id


# ============================================================
# Products
# ============================================================


@dataclass
class UpsertResult:
    product: Product
    created: bool


async def upsert_product(
    session: AsyncSession,
    merchant_id: int,
    platform: Platform,
    data: Mapping[str, Any],
) -> UpsertResult | None:
    """Insert or update one product from a platform payload.

    Returns None if the payload lacks an id or a name.
    """
    normalized = normalize_product(platform, data)
    if normalized is None:
        logger.warning(f"Skipping {platform.value} product without id/name for merchant={merchant_id}")
        return None

    category_id = None
    try:
        async with session.begin_nested():
            category_id = await infer_category_id(session, merchant_id, platform, normalized)
    except IntegrityError as e:
        logger.warning(f"Category inference skipped merchant={merchant_id} product={normalized.external_id}: {e.orig}")

    hint = normalized.categories[0].name if normalized.categories else None
    product = await find_product(session, merchant_id, platform, normalized.external_id)
    if product is not None:
        _apply_product_fields(product, normalized)
        if category_id is not None:
            product.category_id = category_id
        if hint:
            product.category_hint = hint
        await session.flush()
        return UpsertResult(product=product, created=False)

    slug = await _unique_slug(
        session,
        Product,
        f"{merchant_id}-{normalized.external_id}-{slugify(normalized.title)}",
    )
    product = Product(merchant_id=merchant_id, slug=slug, category_id=category_id, category_hint=hint)
    setattr(product, _product_ext_column(platform).key, normalized.external_id)
    _apply_product_fields(product, normalized)
    try:
        async with session.begin_nested():
            session.add(product)
            await session.flush()
    except IntegrityError:
        # Concurrent create of the same external id (or slug); converge on the stored row.
        existing = await find_product(session, merchant_id, platform, normalized.external_id)
        if existing is None:
            raise
        _apply_product_fields(existing, normalized)
        await session.flush()
        return UpsertResult(product=existing, created=False)

    logger.info(f"Created {platform.value} product {normalized.external_id} merchant={merchant_id} slug={slug}")
    return UpsertResult(product=product, created=True)


def _apply_product_fields(product: Product, normalized: NormalizedProduct) -> None:
    product.title = normalized.title[:500]
    product.description = normalized.description
    product.price = normalized.price
    product.regular_price = normalized.regular_price
    product.currency = normalized.currency[:3]
    product.quantity = normalized.quantity
    product.image_url = normalized.image_url
    product.product_url = normalized.product_url
    product.is_active = normalized.is_active


async def deactivate_product(
    session: AsyncSession,
    merchant_id: int,
    platform: Platform,
    external_id: str,
) -> bool:
    """Mark a product inactive. Returns False if it was never synced."""
    product = await find_product(session, merchant_id, platform, external_id)
    if product is None:
        logger.info(f"Deactivate: {platform.value} product {external_id} unknown for merchant={merchant_id}")
        return False
    product.is_active = False
    await session.flush()
    logger.info(f"Deactivated {platform.value} product {external_id} merchant={merchant_id}")
    return True


# ============================================================
# Orders
# ============================================================


async def upsert_order(
    session: AsyncSession,
    merchant_id: int,
    platform: Platform,
    order: NormalizedOrder,
) -> tuple[Order, bool]:
    """Insert or update an order keyed on its platform order id. Returns (order, created)."""
    row = await find_order(session, platform, order.order_id)
    if row is None:
        row = Order(merchant_id=merchant_id, platform=platform)
        setattr(row, _order_ext_column(platform).key, order.order_id)
        _apply_order_fields(row, order)
        try:
            async with session.begin_nested():
                session.add(row)
                await session.flush()
            return row, True
        except IntegrityError:
            row = await find_order(session, platform, order.order_id)
            if row is None:
                raise

    _apply_order_fields(row, order)
    await session.flush()
    return row, False


def _apply_order_fields(row: Order, order: NormalizedOrder) -> None:
    row.total = order.total
    row.currency = order.currency[:3]
    if order.order_status:
        row.status = order.order_status
    if order.payment_status:
        row.payment_status = order.payment_status
    if order.referrer_code:
        row.referrer_code = order.referrer_code
    if order.product_external_ids:
        row.product_external_ids_json = json.dumps(order.product_external_ids)
    if order.created_at and row.ordered_at is None:
        row.ordered_at = order.created_at


def order_product_external_ids(order: Order) -> list[str]:
    if not order.product_external_ids_json:
        return []
    try:
        ids = json.loads(order.product_external_ids_json)
    except json.JSONDecodeError:
        return []
    return [str(x) for x in ids] if isinstance(ids, list) else []


# ============================================================
# Poll sync
# ============================================================


@dataclass
class SyncStats:
    """Statistics from one poll sync run."""

    merchant_id: int
    platform: str
    pages: int = 0
    categories: int = 0
    fetched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0


def _has_next_page(platform: Platform, envelope: Envelope, page: int, page_size: int) -> bool:
    if platform is Platform.SALLA:
        pagination = envelope.pagination
        total_pages = to_float(first_value(pagination, ("totalPages", "total_pages")))
        current = to_float(first_value(pagination, ("currentPage", "current_page")), page)
        if total_pages is not None:
            return (current or page) < total_pages
        return bool(dig(pagination, "links.next"))
    if envelope.raw.get("next"):
        return True
    return isinstance(envelope.data, list) and len(envelope.data) >= page_size


async def sync_categories(
    session: AsyncSession,
    credentials: Credentials,
    client: PlatformClient,
    *,
    refresh: RefreshCallback | None = None,
    retry: RetryPolicy | None = None,
) -> int:
    """Pull the category tree and upsert every node. Returns the number of categories."""
    envelope = await client.get(credentials, "categories", refresh=refresh, retry=retry)
    count = 0
    stack = list(envelope.data) if isinstance(envelope.data, list) else []
    while stack:
        item = stack.pop(0)
        if not isinstance(item, Mapping):
            continue
        category = normalize_category(item)
        if category is not None:
            await upsert_category(session, credentials.merchant_id, client.platform, category)
            count += 1
        children = first_value(item, ("sub_categories", "children", "sub"))
        if isinstance(children, list):
            for child in children:
                if isinstance(child, Mapping) and "parent_id" not in child and category is not None:
                    child = {**child, "parent_id": category.external_id}
                stack.append(child)
    return count


async def sync_products(
    session: AsyncSession,
    credentials: Credentials,
    client: PlatformClient,
    *,
    refresh: RefreshCallback | None = None,
    retry: RetryPolicy | None = None,
    page_size: int = PRODUCTS_PAGE_SIZE,
    max_pages: int = MAX_SYNC_PAGES,
    include_categories: bool = True,
) -> SyncStats:
    """Walk the paginated products endpoint and upsert every product.

    API errors (AuthError, RateLimited, UpstreamError) propagate, and the
    caller decides whether to commit the pages written so far. Tokens
    refreshed mid-run are committed separately and survive either way.
    """
    platform = client.platform
    merchant_id = credentials.merchant_id
    stats = SyncStats(merchant_id=merchant_id, platform=platform.value)

    if include_categories:
        stats.categories = await sync_categories(session, credentials, client, refresh=refresh, retry=retry)

    size_param = "per_page" if platform is Platform.SALLA else "page_size"
    page = 1
    while page <= max_pages:
        envelope = await client.get(
            credentials,
            "products",
            params={"page": page, size_param: page_size},
            refresh=refresh,
            retry=retry,
        )
        stats.pages += 1
        items = envelope.data if isinstance(envelope.data, list) else []
        for item in items:
            if not isinstance(item, Mapping):
                stats.skipped += 1
                continue
            stats.fetched += 1
            try:
                result = await upsert_product(session, merchant_id, platform, item)
            except IntegrityError as e:
                stats.errors += 1
                logger.error(f"Sync {platform.value} merchant={merchant_id} product={item.get('id')} failed: {e.orig}")
                continue
            if result is None:
                stats.skipped += 1
            elif result.created:
                stats.created += 1
            else:
                stats.updated += 1

        if not items or not _has_next_page(platform, envelope, page, page_size):
            break
        page += 1

    logger.info(
        f"Sync {platform.value} merchant={merchant_id}: pages={stats.pages} fetched={stats.fetched} "
        f"created={stats.created} updated={stats.updated} skipped={stats.skipped} errors={stats.errors}"
    )
    return stats


async def sync_merchant(
    session: AsyncSession,
    merchant_id: int,
    platform: Platform,
    *,
    settings: Settings | None = None,
    http_client: httpx.AsyncClient | None = None,
    page_size: int = PRODUCTS_PAGE_SIZE,
    max_pages: int = MAX_SYNC_PAGES,
) -> SyncStats:
    """Poll-sync one merchant's catalog on one platform.

    Raises:
        CredentialsNotFound: Merchant never connected this platform.
        AuthError: Connection incomplete, or the token was rejected after a refresh.
    """
    settings = settings or get_settings()
    # Credentials live outside the catalog transaction; a refresh commits on its own.
    async with get_session() as creds_session:
        credentials = await get_credentials(creds_session, merchant_id, platform)
    if not credentials.connected:
        raise AuthError(
            f"{platform.label} connection for merchant {merchant_id} is missing {credentials.missing}",
            platform=platform.value,
            merchant_id=merchant_id,
        )
    async with PlatformClient(platform, http_client=http_client) as client:
        return await sync_products(
            session,
            credentials,
            client,
            refresh=make_refresh_callback(merchant_id, platform, settings=settings, http_client=http_client),
            retry=RetryPolicy.from_settings(settings),
            page_size=page_size,
            max_pages=max_pages,
        )


async def fetch_product(
    credentials: Credentials,
    client: PlatformClient,
    external_id: str,
    *,
    refresh: RefreshCallback | None = None,
) -> Mapping[str, Any]:
    """Fetch a single product payload (webhooks that only carry an id)."""
    envelope = await client.get(credentials, f"products/{external_id}", refresh=refresh)
    if not isinstance(envelope.data, Mapping):
        return {}
    return envelope.data


# ============================================================
# Category repair
# ============================================================


@dataclass
class RepairStats:
    """Result of one category repair pass."""

    dry_run: bool
    scanned: int = 0
    repaired: int = 0
    unmatched: int = 0
    assignments: list[dict[str, Any]] = field(default_factory=list)


def product_platform(product: Product) -> Platform:
    return Platform.ZID if product.zid_product_id and not product.salla_product_id else Platform.SALLA


async def _match_category(session: AsyncSession, product: Product) -> Category | None:
    scope = or_(Category.merchant_id == product.merchant_id, Category.merchant_id.is_(None))

    fragment = product.slug.rsplit("-", 1)[-1].lower()
    if fragment and not fragment.isdigit():
        result = await session.execute(
            select(Category)
            .where(
                scope,
                Category.is_active.is_(True),
                or_(func.lower(Category.name) == fragment, Category.slug.contains(fragment)),
            )
            .order_by(Category.id)
            .limit(1)
        )
        found = result.scalar_one_or_none()
        if found is not None:
            return found

    if product.category_hint:
        result = await session.execute(
            select(Category)
            .where(
                scope,
                Category.is_active.is_(True),
                func.lower(Category.name) == product.category_hint.lower(),
            )
            .order_by(Category.id)
            .limit(1)
        )
        found = result.scalar_one_or_none()
        if found is not None:
            return found

    prefix = f"{product_platform(product).value}-{product.merchant_id}-"
    result = await session.execute(
        select(Category)
        .where(Category.is_active.is_(True), Category.slug.startswith(prefix))
        .order_by(Category.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def repair_categories(
    session: AsyncSession,
    *,
    dry_run: bool = False,
    merchant_id: int | None = None,
    limit: int | None = None,
) -> RepairStats:
    """Re-run category inference for active products with no category.

    Heuristic, not a guarantee: ambiguous slugs can pick the wrong category,
    so review a dry_run=True pass (the admin endpoint default) before applying.
    """
    stats = RepairStats(dry_run=dry_run)
    query = (
        select(Product)
        .where(Product.category_id.is_(None), Product.is_active.is_(True))
        .order_by(Product.id)
    )
    if merchant_id is not None:
        query = query.where(Product.merchant_id == merchant_id)
    if limit:
        query = query.limit(limit)

    products = (await session.execute(query)).scalars().all()
    for product in products:
        stats.scanned += 1
        category = await _match_category(session, product)
        if category is None:
            stats.unmatched += 1
            stats.assignments.append(
                {"product_id": product.id, "product_slug": product.slug, "category_id": None}
            )
            continue
        stats.assignments.append(
            {
                "product_id": product.id,
                "product_slug": product.slug,
                "category_id": category.id,
                "category_slug": category.slug,
            }
        )
        if not dry_run:
            product.category_id = category.id
            stats.repaired += 1

    if not dry_run:
        await session.flush()
    logger.info(
        f"Category repair dry_run={dry_run}: scanned={stats.scanned} repaired={stats.repaired} "
        f"unmatched={stats.unmatched}"
    )
    return stats
