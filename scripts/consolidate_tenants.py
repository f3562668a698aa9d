from __future__ import annotations

import argparse
import asyncio
import json

from crmrelay.core.logging import configure_logging
from crmrelay.persistence.db import SessionLocal
from crmrelay.services.tenancy.admin import consolidate_duplicate_tenants, find_duplicate_mappings


async def _main(company_id: str | None, keep_tenant_id: str | None) -> None:
    # Without a company id only report duplicates; merging is always an explicit choice.
    configure_logging()
    async with SessionLocal() as session:
        if company_id is None:
            result = await find_duplicate_mappings(session)
        else:
            result = await consolidate_duplicate_tenants(
                session, company_id=company_id, keep_tenant_id=keep_tenant_id
            )
    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Report or merge tenants bound to the same CRM company.")
    parser.add_argument("--company-id")
    parser.add_argument("--keep-tenant-id")
    args = parser.parse_args()
    asyncio.run(_main(args.company_id, args.keep_tenant_id))
