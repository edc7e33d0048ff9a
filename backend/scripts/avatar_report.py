"""CLI helper that checks how many profile avatars can be signed right now."""

from __future__ import annotations

import asyncio
import sys

from athletrack_core import AvatarService, AvatarSettings


async def _report(service: AvatarService) -> tuple[int, int]:
    profiles = await service.fetch_all_profiles()
    urls = await service.bulk_sign_from_profiles(profiles)
    return len(urls), len(profiles)


def main() -> int:
    settings = AvatarSettings.from_env()
    if not settings.configured:
        print("ERROR: SUPABASE_URL and a Supabase key must be set", file=sys.stderr)
        return 1

    resolved, total = asyncio.run(_report(AvatarService.from_settings(settings)))
    print(f"{resolved} of {total} avatars resolved")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
