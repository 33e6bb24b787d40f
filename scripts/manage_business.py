"""CLI for business, API key and integration management.

Usage::

    uv run python -m scripts.manage_business <command> [options]

Commands:
    create-business       Create a new business (tenant)
    list-businesses       List all businesses
    set-plan              Change a business subscription plan
    deactivate-business   Deactivate a business (all its keys stop working)
    create-key            Generate an API key for a business
    list-keys             List API keys for a business
    revoke-key            Revoke an API key by id
    create-integration    Register a platform integration and issue its key
    list-integrations     List platform integrations
    regenerate-integration-key
                          Issue a new key for an integration (old key stops working)
"""

from __future__ import annotations

import argparse
import sys
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import NoReturn

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from waveorder.auth.keys import KeyKind, generate_key
from waveorder.auth.management import normalize_slug
from waveorder.auth.plans import has_api_access
from waveorder.auth.scopes import filter_scopes, normalize_scopes
from waveorder.config import settings
from waveorder.storage.orm import ApiKey, Business, Integration, SubscriptionPlan


def get_sync_session() -> Session:
    """Create sync session for CLI operations.

    Uses the same database URL as the async app (psycopg v3
    handles both sync and async natively).
    """
    engine = create_engine(settings.database_url)
    return Session(engine)


def _fail(message: str) -> NoReturn:
    print(message, file=sys.stderr)
    sys.exit(1)


def _get_business(session: Session, slug: str) -> Business:
    business = session.execute(
        select(Business).where(Business.slug == slug)
    ).scalar_one_or_none()
    if business is None:
        _fail(f"Business not found: {slug}")
    return business


def create_business(args: argparse.Namespace) -> None:
    """Create a new business."""
    slug = normalize_slug(args.slug or args.name)
    with get_sync_session() as session:
        existing = session.execute(
            select(Business).where(
                (Business.name == args.name) | (Business.slug == slug)
            )
        ).scalar_one_or_none()
        if existing is not None:
            _fail(f"Business already exists: {args.name}")

        business = Business(
            name=args.name,
            slug=slug,
            subscription_plan=SubscriptionPlan(args.plan),
            is_active=True,
        )
        session.add(business)
        session.commit()
        print(f"Business created: {args.name} (slug: {slug}, id: {business.id})")


def list_businesses(_args: argparse.Namespace) -> None:
    """List all businesses with active key counts."""
    with get_sync_session() as session:
        stmt = (
            select(
                Business.name,
                Business.slug,
                Business.subscription_plan,
                Business.is_active,
                func.count(ApiKey.id).label("key_count"),
            )
            .outerjoin(
                ApiKey,
                (Business.id == ApiKey.business_id) & ApiKey.is_active.is_(True),
            )
            .group_by(Business.id)
            .order_by(Business.name)
        )
        rows = session.execute(stmt).all()

        if not rows:
            print("No businesses found.")
            return

        print("Businesses:")
        for i, row in enumerate(rows, 1):
            status = "active" if row.is_active else "inactive"
            keys = row.key_count
            print(
                f"  {i}. {row.name} [{row.slug}] plan={row.subscription_plan} "
                f"({status}, {keys} active key{'s' if keys != 1 else ''})"
            )


def set_plan(args: argparse.Namespace) -> None:
    """Change the subscription plan of a business."""
    with get_sync_session() as session:
        business = _get_business(session, args.business)
        business.subscription_plan = SubscriptionPlan(args.plan)
        session.commit()
        print(f"Plan updated: {args.business} -> {args.plan}")


def deactivate_business(args: argparse.Namespace) -> None:
    """Deactivate a business (all keys become invalid)."""
    with get_sync_session() as session:
        business = _get_business(session, args.business)
        if not business.is_active:
            _fail(f"Business already inactive: {args.business}")

        business.is_active = False
        session.commit()
        print(f"Business deactivated: {args.business}")


def create_key(args: argparse.Namespace) -> None:
    """Generate an API key for a business."""
    with get_sync_session() as session:
        business = _get_business(session, args.business)
        if not has_api_access(str(business.subscription_plan), settings):
            _fail(
                "API access requires the Business plan "
                f"(current: {business.subscription_plan})"
            )

        active = session.execute(
            select(func.count(ApiKey.id)).where(
                ApiKey.business_id == business.id, ApiKey.is_active.is_(True)
            )
        ).scalar_one()
        if active >= settings.max_active_keys_per_business:
            _fail(
                f"Maximum {settings.max_active_keys_per_business} active API keys "
                "allowed. Revoke an existing key first."
            )

        scopes = normalize_scopes(s.strip() for s in args.scopes.split(","))
        generated = generate_key(KeyKind.LIVE)

        api_key = ApiKey(
            business_id=business.id,
            name=args.name,
            key_hash=generated.key_hash,
            key_preview=generated.key_preview,
            scopes=scopes,
            is_active=True,
            request_count=0,
        )
        session.add(api_key)
        session.commit()

        print(f'API key created for "{args.business}":')
        print(f"   Key:     {generated.plain_key}")
        print(f"   Preview: {generated.key_preview}")
        print(f"   Scopes:  {', '.join(scopes)}")
        print(f"   Name:    {args.name}")
        print()
        print("Save this key now -- it cannot be retrieved later!")


def list_keys(args: argparse.Namespace) -> None:
    """List API keys for a business."""
    with get_sync_session() as session:
        business = _get_business(session, args.business)
        keys = (
            session.execute(
                select(ApiKey)
                .where(ApiKey.business_id == business.id)
                .order_by(ApiKey.created_at)
            )
            .scalars()
            .all()
        )

        if not keys:
            print(f'No keys for "{args.business}".')
            return

        print(f'Keys for "{args.business}":')
        for i, key in enumerate(keys, 1):
            status = "active" if key.is_active else "revoked"
            scopes = ",".join(key.scopes) if key.scopes else "none"
            last_used = key.last_used_at.isoformat() if key.last_used_at else "never"
            print(
                f"  {i}. {key.id} {key.key_preview} [{key.name}] scopes={scopes} "
                f"requests={key.request_count} last_used={last_used} {status}"
            )


def revoke_key(args: argparse.Namespace) -> None:
    """Revoke one of a business's API keys by its id."""
    with get_sync_session() as session:
        business = _get_business(session, args.business)
        key = session.get(ApiKey, uuid.UUID(args.key_id))
        if key is None or key.business_id != business.id:
            _fail(f"Key not found for {args.business}: {args.key_id}")

        if not key.is_active:
            _fail(f"Key already revoked: {args.key_id}")

        key.is_active = False
        key.revoked_at = datetime.now(UTC)
        session.commit()
        print(f"Key revoked: {key.key_preview}")


def create_integration(args: argparse.Namespace) -> None:
    """Register a platform integration and print its key once."""
    slug = normalize_slug(args.slug)
    if not slug:
        _fail("Integration slug is empty after normalization")

    with get_sync_session() as session:
        existing = session.execute(
            select(Integration).where(Integration.slug == slug)
        ).scalar_one_or_none()
        if existing is not None:
            _fail(f'An integration with slug "{slug}" already exists')

        generated = generate_key(KeyKind.INTEGRATION)
        integration = Integration(
            name=args.name,
            slug=slug,
            api_key_hash=generated.key_hash,
            api_key_preview=generated.key_preview,
            scopes=filter_scopes(s.strip() for s in args.scopes.split(",")),
            is_active=True,
            rate_limit=args.rate_limit,
            rate_window_seconds=args.rate_window,
            request_count=0,
        )
        session.add(integration)
        session.commit()

        print(f'Integration created: {args.name} (slug: {slug})')
        print(f"   Key:        {generated.plain_key}")
        print(f"   Rate limit: {args.rate_limit} per {args.rate_window}s")
        print()
        print("Save this key now -- it cannot be retrieved later!")


def list_integrations(_args: argparse.Namespace) -> None:
    """List platform integrations."""
    with get_sync_session() as session:
        integrations = (
            session.execute(select(Integration).order_by(Integration.name))
            .scalars()
            .all()
        )
        if not integrations:
            print("No integrations found.")
            return

        print("Integrations:")
        for i, item in enumerate(integrations, 1):
            status = "active" if item.is_active else "inactive"
            print(
                f"  {i}. {item.name} [{item.slug}] {item.api_key_preview} "
                f"limit={item.rate_limit}/{item.rate_window_seconds}s {status}"
            )


def regenerate_integration_key(args: argparse.Namespace) -> None:
    """Replace an integration key; the previous key is rejected immediately."""
    with get_sync_session() as session:
        integration = session.execute(
            select(Integration).where(Integration.slug == args.slug)
        ).scalar_one_or_none()
        if integration is None:
            _fail(f"Integration not found: {args.slug}")

        generated = generate_key(KeyKind.INTEGRATION)
        integration.api_key_hash = generated.key_hash
        integration.api_key_preview = generated.key_preview
        integration.last_used_at = None
        session.commit()

        print(f'Key regenerated for integration "{args.slug}":')
        print(f"   Key: {generated.plain_key}")
        print()
        print("Save this key now -- it cannot be retrieved later!")


def main() -> None:
    """Parse arguments and dispatch to command handler."""
    plans = [p.value for p in SubscriptionPlan]
    parser = argparse.ArgumentParser(description="Business and API key management CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    # create-business
    p = sub.add_parser("create-business", help="Create a new business")
    p.add_argument("--name", required=True, help="Business name")
    p.add_argument("--slug", help="URL slug (derived from name if omitted)")
    p.add_argument("--plan", choices=plans, default="STARTER", help="Subscription plan")

    # list-businesses
    sub.add_parser("list-businesses", help="List all businesses")

    # set-plan
    p = sub.add_parser("set-plan", help="Change a business plan")
    p.add_argument("--business", required=True, help="Business slug")
    p.add_argument("--plan", choices=plans, required=True, help="New plan")

    # deactivate-business
    p = sub.add_parser("deactivate-business", help="Deactivate a business")
    p.add_argument("--business", required=True, help="Business slug")

    # create-key
    p = sub.add_parser("create-key", help="Generate API key for a business")
    p.add_argument("--business", required=True, help="Business slug")
    p.add_argument(
        "--scopes",
        default="",
        help="Comma-separated, e.g. products:read,orders:read (defaults if empty)",
    )
    p.add_argument("--name", default="default", help="Key name")

    # list-keys
    p = sub.add_parser("list-keys", help="List API keys for a business")
    p.add_argument("--business", required=True, help="Business slug")

    # revoke-key
    p = sub.add_parser("revoke-key", help="Revoke an API key")
    p.add_argument("--business", required=True, help="Business slug")
    p.add_argument("--key-id", required=True, help="Key id to revoke")

    # create-integration
    p = sub.add_parser("create-integration", help="Register a platform integration")
    p.add_argument("--name", required=True, help="Integration name")
    p.add_argument("--slug", required=True, help="Integration slug")
    p.add_argument(
        "--scopes", default="", help="Comma-separated, e.g. orders:read"
    )
    p.add_argument(
        "--rate-limit",
        type=int,
        default=settings.integration_default_rate_limit,
        help="Requests per window",
    )
    p.add_argument(
        "--rate-window",
        type=int,
        default=settings.integration_default_rate_window_seconds,
        help="Window length in seconds",
    )

    # list-integrations
    sub.add_parser("list-integrations", help="List platform integrations")

    # regenerate-integration-key
    p = sub.add_parser(
        "regenerate-integration-key", help="Issue a new key for an integration"
    )
    p.add_argument("--slug", required=True, help="Integration slug")

    args = parser.parse_args()
    commands: dict[str, Callable[[argparse.Namespace], None]] = {
        "create-business": create_business,
        "list-businesses": list_businesses,
        "set-plan": set_plan,
        "deactivate-business": deactivate_business,
        "create-key": create_key,
        "list-keys": list_keys,
        "revoke-key": revoke_key,
        "create-integration": create_integration,
        "list-integrations": list_integrations,
        "regenerate-integration-key": regenerate_integration_key,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
