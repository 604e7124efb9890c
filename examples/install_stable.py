import asyncio
import logging

from foundryup.archivefetch import ArchiveTransport
from foundryup.config import Context, resolve
from foundryup.installer import InstallOrchestrator, Request
from foundryup.targets import Target
from foundryup.versions import VersionStore

logging.basicConfig(level=logging.INFO, format="%(message)s")

# 1. Resolve ~/.foundry (or $FOUNDRY_DIR) and the host target
layout, profile = resolve()
ctx = Context(layout=layout, profile=profile, target=Target.detect())


async def main() -> None:
    # 2. Install the latest stable release, verified against its attestation
    async with ArchiveTransport() as transport:
        result = await InstallOrchestrator(ctx, transport).run(Request(version="stable"))
    print(f"✅ Activated {result.tag} into {layout.bin_dir}")


asyncio.run(main())

# 3. Show everything that is installed
for version in VersionStore(ctx).list_installed():
    print(version.label, [b.describe() for b in version.binaries])
