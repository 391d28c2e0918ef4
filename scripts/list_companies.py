#!/usr/bin/env python3
import asyncio
import os
import sys

# Ensure repo root is on sys.path for `import bcsync_*`
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import httpx  # noqa: E402

from bcsync_auth import build_token_cache  # noqa: E402
from bcsync_http import BcClient, resolve_url  # noqa: E402
from bcsync_settings import require_settings  # noqa: E402


async def main() -> None:
    s = require_settings()
    async with httpx.AsyncClient(timeout=s.HTTP_TIMEOUT) as http:
        client = BcClient(http, build_token_cache(s), s.retry_policy())
        companies = await client.fetch_all(resolve_url(s.API_BASE, "companies"), "id", source="companies")

    if not companies.complete:
        print("fail: could not read all companies")
    for company in companies.values():
        print(f"{company.get('id')} - {company.get('name')} ({company.get('displayName')})")


if __name__ == "__main__":
    asyncio.run(main())
