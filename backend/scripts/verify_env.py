import asyncio
from sqlalchemy import text
from cdn_purge.cdn.provider_config import load_provider_config, max_paths_for
from cdn_purge.core.config import settings
from cdn_purge.core.db import SessionLocal
from cdn_purge.core.errors import ProviderConfigError

async def main():
    print("CDN_PROVIDER:", settings.CDN_PROVIDER)
    print("CDN_MAX_CONCURRENCY:", settings.CDN_MAX_CONCURRENCY)
    print("CDN_HTTP_TIMEOUT_SEC:", settings.CDN_HTTP_TIMEOUT_SEC)
    print("CDN_RETRY_ATTEMPTS:", settings.CDN_RETRY_ATTEMPTS)
    try:
        config = load_provider_config()
    except ProviderConfigError as exc:
        print("Provider settings: INVALID -", exc)
    else:
        # repr of the config masks SecretStr values
        print("Provider settings:", repr(config))
        print("Paths per batch:", max_paths_for(config.provider_type))
    async with SessionLocal() as s:
        r = await s.execute(text("SELECT 1"))
        print("Database reachable:", r.scalar() == 1)

if __name__ == "__main__":
    asyncio.run(main())
