"""
Snapshot of image references running in the cluster.

Every namespace of every selected context is scanned for the images of
Pods, Deployments, StatefulSets, DaemonSets, ReplicaSets, Jobs and
CronJobs (containers and init containers). The result only ever vetoes
deletions.
"""

import concurrent.futures
from typing import Any, List, Optional, Set, Tuple

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.config.config_exception import ConfigException

from cleaner_utils.config_manager import config_manager
from cleaner_utils.logging_utils import get_logger
from stages_cleaner.exceptions import ClusterUnavailableError
from stages_cleaner.models import LiveImageSet

logger = get_logger(__name__)

IN_CLUSTER_CONTEXT = "in-cluster"
_IMAGE_ID_PREFIXES = ("docker-pullable://", "docker://")


def pod_spec_images(pod_spec: Any) -> Set[str]:
    """Images of the containers and init containers of a pod spec."""
    images: Set[str] = set()
    if pod_spec is None:
        return images
    for container in (pod_spec.containers or []) + (pod_spec.init_containers or []):
        if container.image:
            images.add(container.image)
    return images


def pod_status_images(pod_status: Any) -> Set[str]:
    """Resolved ``repo@digest`` references reported by the kubelet."""
    images: Set[str] = set()
    if pod_status is None:
        return images
    for status in (pod_status.container_statuses or []) + (pod_status.init_container_statuses or []):
        image_id = status.image_id or ""
        for prefix in _IMAGE_ID_PREFIXES:
            if image_id.startswith(prefix):
                image_id = image_id[len(prefix):]
        if "@" in image_id:
            images.add(image_id)
    return images


def _template_spec(workload: Any) -> Any:
    template = getattr(workload.spec, "template", None)
    return template.spec if template is not None else None


def _cronjob_spec(cronjob: Any) -> Any:
    job_template = cronjob.spec.job_template
    if job_template is None or job_template.spec is None or job_template.spec.template is None:
        return None
    return job_template.spec.template.spec


class _ContextClients:
    def __init__(self, name: str, api_client: Any):
        self.name = name
        self.core_v1 = k8s_client.CoreV1Api(api_client)
        self.apps_v1 = k8s_client.AppsV1Api(api_client)
        self.batch_v1 = k8s_client.BatchV1Api(api_client)


class LiveWorkloadScanner:
    """Collect image references of everything running in the target cluster(s)."""

    def __init__(
        self,
        kube_config: Optional[str] = None,
        kube_context: Optional[str] = None,
        all_contexts: Optional[bool] = None,
        max_workers: Optional[int] = None,
    ):
        self.kube_config = kube_config or config_manager.get_kube_config()
        self.kube_context = kube_context or config_manager.get_kube_context()
        self.all_contexts = config_manager.scan_all_kube_contexts() if all_contexts is None else all_contexts
        self.max_workers = max_workers or config_manager.get_kube_max_workers()

    def _context_names(self) -> List[Optional[str]]:
        if self.kube_context and not self.all_contexts:
            return [self.kube_context]
        contexts, active = k8s_config.list_kube_config_contexts(config_file=self.kube_config)
        if self.all_contexts:
            return [c["name"] for c in contexts]
        return [active["name"] if active else None]

    def _build_clients(self) -> List[_ContextClients]:
        """API clients per selected context; in-cluster config when no kubeconfig is available."""
        try:
            names = self._context_names()
        except (ConfigException, OSError, TypeError) as e:
            if self.kube_config or self.kube_context:
                raise ClusterUnavailableError("load kubeconfig", e)
            try:
                k8s_config.load_incluster_config()
            except ConfigException as incluster_error:
                raise ClusterUnavailableError("load kubernetes configuration", incluster_error)
            return [_ContextClients(IN_CLUSTER_CONTEXT, k8s_client.ApiClient())]

        clients = []
        for name in names:
            try:
                api_client = k8s_config.new_client_from_config(config_file=self.kube_config, context=name)
            except (ConfigException, OSError) as e:
                raise ClusterUnavailableError(f"load kubeconfig context {name or '(current)'}", e)
            clients.append(_ContextClients(name or "current", api_client))
        return clients

    def _list_namespaces(self, clients: _ContextClients) -> List[str]:
        try:
            namespaces = clients.core_v1.list_namespace()
        except Exception as e:
            raise ClusterUnavailableError(f"list namespaces in context {clients.name}", e)
        return [ns.metadata.name for ns in namespaces.items]

    def _scan_namespace(self, clients: _ContextClients, namespace: str) -> Set[str]:
        images: Set[str] = set()

        for pod in clients.core_v1.list_namespaced_pod(namespace=namespace).items:
            images |= pod_spec_images(pod.spec)
            images |= pod_status_images(pod.status)

        apps_listers = (
            clients.apps_v1.list_namespaced_deployment,
            clients.apps_v1.list_namespaced_stateful_set,
            clients.apps_v1.list_namespaced_daemon_set,
            clients.apps_v1.list_namespaced_replica_set,
            clients.batch_v1.list_namespaced_job,
        )
        for lister in apps_listers:
            for workload in lister(namespace=namespace).items:
                images |= pod_spec_images(_template_spec(workload))

        for cronjob in clients.batch_v1.list_namespaced_cron_job(namespace=namespace).items:
            images |= pod_spec_images(_cronjob_spec(cronjob))

        return images

    def _scan_context(self, clients: _ContextClients) -> Tuple[Set[str], List[str]]:
        namespaces = self._list_namespaces(clients)
        logger.info(f"Scanning {len(namespaces)} namespaces in context {clients.name}")

        images: Set[str] = set()
        failed: List[str] = []
        workers = max(1, min(self.max_workers, len(namespaces) or 1))
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_ns = {executor.submit(self._scan_namespace, clients, ns): ns for ns in namespaces}
            for future in concurrent.futures.as_completed(future_to_ns):
                namespace = future_to_ns[future]
                try:
                    images |= future.result()
                except Exception as e:
                    logger.warning(f"⚠️  Could not scan namespace {clients.name}/{namespace}: {e}")
                    failed.append(f"{clients.name}/{namespace}")
        return images, sorted(failed)

    def scan(self, without_kube: bool = False) -> LiveImageSet:
        """Take the snapshot.

        Raises:
            ClusterUnavailableError: A context could not be reached at all
        """
        if without_kube:
            logger.warning("⚠️  --without-kube: images running in the cluster are NOT protected from deletion")
            return LiveImageSet.disabled()

        references: Set[str] = set()
        failed: List[str] = []
        scanned: List[str] = []
        for clients in self._build_clients():
            images, failed_namespaces = self._scan_context(clients)
            references |= images
            failed.extend(failed_namespaces)
            scanned.append(clients.name)

        if failed:
            logger.warning(
                f"⚠️  Cluster protection is degraded: {len(failed)} namespaces could not be scanned ({', '.join(failed)})"
            )
        logger.info(f"Found {len(references)} image references running in {len(scanned)} context(s)")
        return LiveImageSet.from_references(
            references,
            failed_namespaces=tuple(failed),
            scanned_contexts=tuple(scanned),
        )
