"""Run the ReplicationDestination volume populator.

PVCs whose dataSourceRef points at a ReplicationDestination are provisioned
from the destination's latest snapshot image. Runs until SIGTERM/SIGINT.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys

from common.k8s import init_clients
from populator.config import build_settings, load_config
from populator.controller import PopulatorController
from populator.registration import ensure_volume_populator_cr_if_crd_present

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(description="ReplicationDestination volume populator")
    parser.add_argument("-c", "--config", help="Path to config file")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Main execution flow."""
    args = parse_args(argv)
    cfg = load_config(args.config)
    settings = build_settings(cfg)

    logging.basicConfig(
        level=settings.log_level,
        format='[%(levelname)s] %(message)s',
        stream=sys.stdout
    )

    clients = init_clients()

    if settings.register_populator:
        ensure_volume_populator_cr_if_crd_present(clients)

    controller = PopulatorController(clients, settings)

    def _shutdown(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        controller.stop_event.set()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    controller.run()
    sys.exit(0)


if __name__ == '__main__':
    main()
