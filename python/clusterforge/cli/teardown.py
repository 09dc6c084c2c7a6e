#!/usr/bin/env python3
"""
clusterforge/cli/teardown.py

Delete every VM a cluster configuration derives:

    python -m clusterforge.cli.teardown --config bootstrap.yaml [--yes]

VMs that no longer exist are skipped. Generated files under output_dir are left
in place.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import List, Optional

from clusterforge.adapters.providers import get_provider
from clusterforge.bootstrap.provisioner import Provisioner
from clusterforge.cli.bootstrap import build_parser, configure_logging, read_cluster_spec
from clusterforge.models.cluster import ClusterSpec


async def _teardown(spec: ClusterSpec, logger: logging.Logger) -> List[str]:
    provider = get_provider(spec, logger)
    try:
        return await Provisioner(provider, logger).teardown_vms(spec)
    finally:
        await provider.close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser("Delete the VMs of a management cluster.")
    parser.add_argument(
        "--yes", action="store_true", help="Do not ask for confirmation."
    )
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    logger = logging.getLogger("clusterforge")

    try:
        spec = read_cluster_spec(args.config)
    except Exception as exc:
        logger.error("%s", exc)
        return 1

    if not args.yes:
        names = ", ".join(spec.derived_vm_names())
        answer = input(f"Delete VMs {names}? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Aborted.")
            return 1

    try:
        deleted = asyncio.run(_teardown(spec, logger))
    except Exception as exc:
        logger.error("Teardown failed: %s", exc)
        return 1

    print(f"Deleted {len(deleted)} VM(s): {', '.join(deleted) or '-'}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
