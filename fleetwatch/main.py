#!/usr/bin/env python3
"""
fleetwatch - coordinated OS updates for Kubernetes nodes

Process entrypoint. `fleetwatch agent` runs on every node (NODE_NAME must be
set), `fleetwatch coordinator` runs once per cluster, and
`fleetwatch recover NODE` returns an Errored node to Idle.
"""
import argparse
import logging
import os
import shlex
import sys

from kubernetes.client.rest import ApiException

from fleetwatch.agent import UpdateAgent
from fleetwatch.config import ENV_PREFIX, CoordinationConfig, parse_duration
from fleetwatch.coordinator import Coordinator, recover_node
from fleetwatch.errors import FleetwatchError
from fleetwatch.health import CommandCheck, NodeReadyCheck, VersionCheck
from fleetwatch.kube import KubernetesDisruptor, KubernetesRecordStore, load_kubernetes_config
from fleetwatch.platform import CommandUpdatePlatform
from fleetwatch.resolver import ConflictResolver

logger = logging.getLogger(__name__)

# Environment variables
NODE_NAME = os.getenv('NODE_NAME')
HOSTPATH_ROOT = os.getenv('HOSTPATH_ROOT', '/var/lib/fleetwatch')
UPDOG_PATH = os.getenv(ENV_PREFIX + 'UPDOG_PATH', '/usr/bin/updog')
HEALTH_CHECK_CMD = os.getenv(ENV_PREFIX + 'HEALTH_CHECK_CMD', '')
RECONCILE_INTERVAL = os.getenv('RECONCILE_INTERVAL', '30s')
LOG_LEVEL = os.getenv('LOG_LEVEL', 'info').upper()


def configure_logging():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logging.getLogger().setLevel(getattr(logging, LOG_LEVEL, logging.INFO))


def node_partition(v1, node_name, partition_label):
    """Partition for a node from its label, or None to use the default"""
    try:
        node = v1.read_node(node_name)
    except ApiException as e:
        logger.warning(f"Could not read labels of {node_name}: {e.reason}")
        return None
    labels = node.metadata.labels or {}
    return labels.get(partition_label)


def run_agent(settings):
    if not NODE_NAME:
        logger.error("NODE_NAME environment variable not set")
        return 1

    logger.info(f"Starting fleetwatch agent for node: {NODE_NAME}")

    v1 = load_kubernetes_config()
    store = KubernetesRecordStore(v1, partition_label=settings.partition_label)
    resolver = ConflictResolver(store, settings)
    platform = CommandUpdatePlatform(updog_path=UPDOG_PATH, state_dir=HOSTPATH_ROOT)

    health_checks = [NodeReadyCheck(v1, NODE_NAME), VersionCheck(platform)]
    if HEALTH_CHECK_CMD:
        health_checks.append(CommandCheck(shlex.split(HEALTH_CHECK_CMD)))

    agent = UpdateAgent(
        NODE_NAME,
        resolver,
        platform,
        ready_check=NodeReadyCheck(v1, NODE_NAME),
        health_checks=health_checks,
        config=settings,
        partition_key=node_partition(v1, NODE_NAME, settings.partition_label),
    )
    agent.run(parse_duration(RECONCILE_INTERVAL))
    return 0


def run_coordinator(settings):
    logger.info("Starting fleetwatch coordinator")

    v1 = load_kubernetes_config()
    store = KubernetesRecordStore(v1, partition_label=settings.partition_label)
    resolver = ConflictResolver(store, settings)
    coordinator = Coordinator(store, resolver, KubernetesDisruptor(v1), settings)
    coordinator.run()
    return 0


def run_recover(settings, node_name):
    v1 = load_kubernetes_config()
    store = KubernetesRecordStore(v1, partition_label=settings.partition_label)
    record = recover_node(ConflictResolver(store, settings), node_name)
    print(f"{record.node_id}: {record.phase.value}")
    return 0


def build_parser():
    parser = argparse.ArgumentParser(prog='fleetwatch', description=__doc__.strip().splitlines()[0])
    commands = parser.add_subparsers(dest='command', required=True)
    commands.add_parser('agent', help='run the per-node update agent')
    commands.add_parser('coordinator', help='run the cluster update coordinator')
    recover = commands.add_parser('recover', help='return an Errored node to Idle')
    recover.add_argument('node', help='node name')
    return parser


def main(argv=None):
    """Main entry point"""
    args = build_parser().parse_args(argv)
    configure_logging()

    try:
        settings = CoordinationConfig.from_env()
        if args.command == 'agent':
            return run_agent(settings)
        if args.command == 'coordinator':
            return run_coordinator(settings)
        return run_recover(settings, args.node)
    except FleetwatchError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")
        return 0


if __name__ == '__main__':
    sys.exit(main())
