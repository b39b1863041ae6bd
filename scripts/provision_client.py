#!/usr/bin/env python3
"""Register an OAuth client, creating a dedicated user pool unless one is named.

Usage:
    python scripts/provision_client.py --name "My App" \
        --redirect-uri https://app.example.com/callback

    # Attach to an existing pool instead of creating one:
    python scripts/provision_client.py --name "My App" --pool-id pool-123 \
        --redirect-uri https://app.example.com/callback

    # List registered clients:
    python scripts/provision_client.py --list

Environment Variables:
    DATA_PROVIDER: postgresql (default), dynamodb or memory
    DATABASE_URL / AWS_REGION / DYNAMODB_ENDPOINT_URL: backend connection settings
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Optional

from poolauth.config import DEFAULT_CLIENT_SCOPE
from poolauth.service.clients import ClientRegistry
from poolauth.service.errors import ServiceError
from poolauth.storage.errors import StorageError
from poolauth.storage.factory import disconnect_store, get_store


async def provision(args: argparse.Namespace) -> dict:
    registry = ClientRegistry(get_store())
    client = await registry.provision_client(
        client_name=args.name,
        redirect_uris=args.redirect_uri,
        pool_id=args.pool_id,
        client_id=args.client_id,
        post_logout_redirect_uris=args.post_logout_redirect_uri,
        scope=args.scope,
        token_endpoint_auth_method=args.auth_method,
        application_type=args.application_type,
    )
    return {
        "client_id": client.client_id,
        "client_secret": client.client_secret,
        "pool_id": client.pool_id,
        "redirect_uris": client.redirect_uris,
    }


async def list_clients(pool_id: Optional[str]) -> list:
    registry = ClientRegistry(get_store())
    rows = []
    token: Optional[str] = None
    while True:
        page = await registry.list_clients(pool_id, next_token=token)
        rows.extend(
            {"client_id": c.client_id, "client_name": c.client_name, "pool_id": c.pool_id}
            for c in page.items
        )
        token = page.next_token
        if not token:
            return rows


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Provision OAuth clients for the identity server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--name", help="Human-readable client name")
    parser.add_argument(
        "--redirect-uri",
        action="append",
        default=[],
        help="Allowed redirect URI (repeatable)",
    )
    parser.add_argument(
        "--post-logout-redirect-uri",
        action="append",
        default=[],
        help="Allowed post-logout redirect URI (repeatable)",
    )
    parser.add_argument("--pool-id", help="Existing pool to attach the client to")
    parser.add_argument("--client-id", help="Explicit client id (generated when omitted)")
    parser.add_argument("--scope", default=DEFAULT_CLIENT_SCOPE)
    parser.add_argument("--auth-method", default="client_secret_basic")
    parser.add_argument("--application-type", default="web", choices=["web", "native"])
    parser.add_argument("--list", action="store_true", help="List clients instead of creating one")
    args = parser.parse_args(argv)

    try:
        if args.list:
            result = asyncio.run(list_clients(args.pool_id))
        else:
            if not args.name or not args.redirect_uri:
                parser.error("--name and at least one --redirect-uri are required")
            result = asyncio.run(provision(args))
    except (ServiceError, StorageError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        disconnect_store()

    print(json.dumps(result, indent=2))
    if not args.list:
        print("\nStore the client secret now; it is not shown again.", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
