from __future__ import annotations

import argparse
import asyncio
import sys

from ragrelay.persistence.db import SessionLocal
from ragrelay.services.tokens import TokenAuthority


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mint or rotate the vector-search token for a tenant")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    return parser


async def _mint(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        token = await TokenAuthority().mint_tenant_token(session, args.tenant)
        await session.commit()
    # Print only once; the previous token stops working immediately.
    print(f"tenant_id={args.tenant}")
    print(f"token={token}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    return asyncio.run(_mint(args))


if __name__ == "__main__":
    sys.exit(main())
