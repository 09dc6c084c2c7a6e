#!/usr/bin/env python3
"""
clusterforge/cli/bootstrap.py

Provision a management cluster from a YAML file:

    python -m clusterforge.cli.bootstrap --config bootstrap.yaml [--log-level DEBUG]

The file's top-level key is `management_cluster`. The configuration is fully
validated before any VM is created. Exit code 0 on success, 1 on any failure.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any, List, Optional

import yaml

from clusterforge.adapters.providers import get_provider
from clusterforge.bootstrap.service import BootstrapResult, BootstrapService
from clusterforge.errors import BootstrapConfigError
from clusterforge.models.cluster import ClusterSpec, load_bootstrap_config

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def read_cluster_spec(path: str) -> ClusterSpec:
    """
    Load and validate the YAML configuration at `path`.

    Raises:
        BootstrapConfigError: If the file is unreadable, not YAML, or invalid.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw: Any = yaml.safe_load(f)
    except OSError as exc:
        raise BootstrapConfigError(f"cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise BootstrapConfigError(f"config file {path} is not valid YAML: {exc}") from exc
    return load_bootstrap_config(raw).management_cluster


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def build_parser(description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument(
        "--config", required=True, help="Path to the cluster bootstrap YAML file."
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: INFO).",
    )
    return parser


async def _bootstrap(spec: ClusterSpec, logger: logging.Logger) -> BootstrapResult:
    provider = get_provider(spec, logger)
    try:
        service = BootstrapService.from_spec(spec, provider, logger=logger)
        return await service.provision_management_cluster()
    finally:
        await provider.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser(
        "Provision a Talos management cluster with kube-vip, Kube-OVN and Flux."
    ).parse_args(argv)
    configure_logging(args.log_level)
    logger = logging.getLogger("clusterforge")

    try:
        spec = read_cluster_spec(args.config)
        result = asyncio.run(_bootstrap(spec, logger))
    except KeyboardInterrupt:
        logger.error("Bootstrap interrupted")
        return 1
    except Exception as exc:
        logger.error("Bootstrap failed: %s", exc)
        return 1

    print(f"Cluster {spec.name} is ready.")
    print(f"  control plane VIP: {spec.talos.control_plane_vip}")
    print(f"  kubeconfig:        {result.kubeconfig.path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
