"""
Kubernetes-backed record store and disruption API
"""
import logging
import time

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from fleetwatch.errors import (
    ConfigError,
    ConflictError,
    DrainError,
    DrainTimeoutError,
    RecordNotFoundError,
    TransientInfraError,
)
from fleetwatch.record import NodeRecord
from fleetwatch.store import RecordEvent, RecordStore

logger = logging.getLogger(__name__)

MIRROR_POD_ANNOTATION = 'kubernetes.io/config.mirror'


def load_kubernetes_config():
    """Load in-cluster configuration, falling back to kubeconfig"""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        try:
            config.load_kube_config()
            logger.info("Loaded kubeconfig configuration")
        except config.ConfigException as e:
            raise ConfigError(f"Could not load Kubernetes configuration: {e}") from e
    return client.CoreV1Api()


class KubernetesRecordStore(RecordStore):
    """Records stored as annotations on Node objects.

    The node's resourceVersion is the record revision. Writes send it back
    in the patch so the API server rejects them with 409 if anything wrote
    the node in between.
    """

    def __init__(self, v1, partition_label=None):
        self.v1 = v1
        self.partition_label = partition_label
        self.list_revision = None

    def _decode(self, node):
        metadata = node.metadata
        return NodeRecord.from_annotations(
            metadata.name,
            metadata.annotations,
            revision=metadata.resource_version,
            labels=metadata.labels,
            partition_label=self.partition_label,
        )

    def get(self, node_id):
        try:
            node = self.v1.read_node(node_id)
        except ApiException as e:
            if e.status == 404:
                raise RecordNotFoundError(node_id) from e
            raise TransientInfraError(f"Reading node {node_id} failed: {e.status} {e.reason}") from e
        except HTTPError as e:
            raise TransientInfraError(f"Reading node {node_id} failed: {e}") from e

        return self._decode(node), node.metadata.resource_version

    def update(self, node_id, expected_revision, record):
        body = {
            "metadata": {
                "resourceVersion": expected_revision,
                "annotations": record.to_annotations(),
            }
        }

        try:
            node = self.v1.patch_node(node_id, body)
        except ApiException as e:
            if e.status == 409:
                raise ConflictError(node_id, expected_revision) from e
            if e.status == 404:
                raise RecordNotFoundError(node_id) from e
            raise TransientInfraError(f"Patching node {node_id} failed: {e.status} {e.reason}") from e
        except HTTPError as e:
            raise TransientInfraError(f"Patching node {node_id} failed: {e}") from e

        logger.debug(f"Updated record for {node_id}: phase={record.phase.value}")
        return node.metadata.resource_version

    def list_all(self):
        try:
            nodes = self.v1.list_node()
        except ApiException as e:
            raise TransientInfraError(f"Listing nodes failed: {e.status} {e.reason}") from e
        except HTTPError as e:
            raise TransientInfraError(f"Listing nodes failed: {e}") from e

        self.list_revision = nodes.metadata.resource_version
        records = [self._decode(node) for node in nodes.items]
        return sorted((r for r in records if r is not None), key=lambda r: r.node_id)

    def watch_all(self, timeout_seconds):
        w = watch.Watch()
        kwargs = {'timeout_seconds': max(1, int(timeout_seconds))}
        if self.list_revision:
            # Only changes after the last snapshot
            kwargs['resource_version'] = self.list_revision
        try:
            for event in w.stream(self.v1.list_node, **kwargs):
                if event['type'] == 'ERROR':
                    self.list_revision = None
                    return
                node = event['object']
                yield RecordEvent(node_id=node.metadata.name, revision=node.metadata.resource_version)
        except ApiException as e:
            if e.status == 410:
                # Snapshot too old, the caller relists
                self.list_revision = None
                return
            raise TransientInfraError(f"Watching nodes failed: {e.status} {e.reason}") from e
        except HTTPError as e:
            raise TransientInfraError(f"Watching nodes failed: {e}") from e
        finally:
            w.stop()


class KubernetesDisruptor:
    """Cordon, drain and uncordon through the Kubernetes API"""

    def __init__(self, v1, poll_interval=5.0, clock=time.monotonic, sleep=time.sleep):
        self.v1 = v1
        self.poll_interval = poll_interval
        self.clock = clock
        self.sleep = sleep

    def _patch_schedulable(self, node_name, unschedulable):
        try:
            self.v1.patch_node(node_name, {"spec": {"unschedulable": unschedulable}})
        except ApiException as e:
            raise TransientInfraError(
                f"Setting unschedulable={unschedulable} on {node_name} failed: {e.status} {e.reason}"
            ) from e
        except HTTPError as e:
            raise TransientInfraError(f"Patching {node_name} failed: {e}") from e

    def is_cordoned(self, node_name):
        try:
            node = self.v1.read_node(node_name)
        except ApiException as e:
            raise TransientInfraError(f"Reading node {node_name} failed: {e.status} {e.reason}") from e
        except HTTPError as e:
            raise TransientInfraError(f"Reading node {node_name} failed: {e}") from e
        return bool(node.spec.unschedulable)

    def cordon(self, node_name):
        logger.info(f"Cordoning node {node_name}")
        self._patch_schedulable(node_name, True)

    def uncordon(self, node_name):
        logger.info(f"Uncordoning node {node_name}")
        self._patch_schedulable(node_name, False)

    def drain(self, node_name, timeout):
        """Evict every movable pod from the node.

        Raises DrainTimeoutError if pods remain after `timeout` seconds and
        DrainError if an eviction is refused for a reason other than a
        PodDisruptionBudget. API server and network failures raise
        TransientInfraError and leave the drain to be resumed.
        """
        logger.info(f"Draining node {node_name} (timeout {timeout:.0f}s)")
        deadline = self.clock() + timeout

        while True:
            pods = self._evictable_pods(node_name)
            if not pods:
                logger.info(f"Node {node_name} drained")
                return

            for pod in pods:
                self._evict(pod)

            if self.clock() >= deadline:
                names = ', '.join(f"{p.metadata.namespace}/{p.metadata.name}" for p in pods[:5])
                raise DrainTimeoutError(
                    f"{len(pods)} pod(s) still on {node_name} after {timeout:.0f}s: {names}"
                )
            self.sleep(self.poll_interval)

    def _evictable_pods(self, node_name):
        try:
            pods = self.v1.list_pod_for_all_namespaces(field_selector=f"spec.nodeName={node_name}")
        except ApiException as e:
            raise TransientInfraError(f"Listing pods on {node_name} failed: {e.status} {e.reason}") from e
        except HTTPError as e:
            raise TransientInfraError(f"Listing pods on {node_name} failed: {e}") from e
        return [pod for pod in pods.items if _is_evictable(pod)]

    def _evict(self, pod):
        name = pod.metadata.name
        namespace = pod.metadata.namespace
        body = client.V1Eviction(metadata=client.V1ObjectMeta(name=name, namespace=namespace))
        try:
            self.v1.create_namespaced_pod_eviction(name, namespace, body)
            logger.debug(f"Evicted {namespace}/{name}")
        except ApiException as e:
            if e.status == 404:
                return
            if e.status == 429:
                # Blocked by a PodDisruptionBudget, try again next round
                logger.debug(f"Eviction of {namespace}/{name} blocked by disruption budget")
                return
            if e.status is None or e.status >= 500:
                raise TransientInfraError(
                    f"Evicting {namespace}/{name} failed: {e.status} {e.reason}"
                ) from e
            raise DrainError(f"Evicting {namespace}/{name} failed: {e.status} {e.reason}") from e
        except HTTPError as e:
            raise TransientInfraError(f"Evicting {namespace}/{name} failed: {e}") from e


def _is_evictable(pod):
    metadata = pod.metadata
    if MIRROR_POD_ANNOTATION in (metadata.annotations or {}):
        return False
    if any(ref.kind == 'DaemonSet' for ref in (metadata.owner_references or [])):
        return False
    if metadata.deletion_timestamp is not None:
        # Already going away; still counts against the drain
        return True
    return pod.status is None or pod.status.phase not in ('Succeeded', 'Failed')
