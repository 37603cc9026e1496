"""Kubernetes and Helm operations against the AKS cluster.

Cluster access is configured from the ``kubeconfig_command`` Terraform
output (``az aks get-credentials ...``), after which the official
kubernetes client reads the merged kubeconfig. Helm has no Python API;
release removal shells out to the helm CLI.
"""

from __future__ import annotations

import base64
import logging
import shlex
import subprocess
import time
from pathlib import Path
from typing import Any

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.stream import stream
from urllib3.exceptions import HTTPError as TransportError
from websocket import WebSocketException

from .config import HELM_TIMEOUT_SECONDS
from .errors import BackendOperationError, PreconditionError
from .models import ExportJob, ExportJobState

logger = logging.getLogger(__name__)

KUBECONFIG_COMMAND_TIMEOUT_SECONDS = 120
EXEC_READ_TIMEOUT_SECONDS = 1
COPY_TIMEOUT_SECONDS = 300
# Client-side slack on top of the server-side watch timeout
REQUEST_TIMEOUT_MARGIN_SECONDS = 30

# Only credential-fetching commands are accepted from Terraform outputs
ALLOWED_KUBECONFIG_PREFIX = ("az", "aks", "get-credentials")

HTTP_NOT_FOUND = 404


def classify_export_pod(pod: Any) -> ExportJobState:
    """Map an export pod's status onto the export job state machine.

    The export container marks its artifact staged through its readiness
    probe, then holds so the artifact can be copied out. Exiting before
    that point (or at all) means the export failed.
    """
    status = pod.status
    if status is None:
        return ExportJobState.PENDING

    if status.phase in ("Failed", "Succeeded"):
        return ExportJobState.FAILED

    for container_status in status.container_statuses or []:
        terminated = container_status.state.terminated if container_status.state else None
        if terminated is not None:
            return ExportJobState.FAILED

    for condition in status.conditions or []:
        if condition.type == "Ready" and condition.status == "True":
            return ExportJobState.STAGED

    return ExportJobState.PENDING


class KubernetesCluster:
    """Cluster operations used by the engines and the backup coordinator."""

    def __init__(self, helm_binary: str = "helm") -> None:
        self._helm = helm_binary
        self._loaded = False
        self._core: client.CoreV1Api | None = None
        self._batch: client.BatchV1Api | None = None

    # -------------------------------------------------------------------------
    # Access
    # -------------------------------------------------------------------------

    def configure_access(self, kubeconfig_command: str | None) -> None:
        """Fetch cluster credentials and load them.

        Raises:
            PreconditionError: If the command is missing, not an
                ``az aks get-credentials`` call, or fails.
        """
        if not kubeconfig_command:
            raise PreconditionError(
                "Could not retrieve kubeconfig command from Terraform outputs",
                remediation="terraform output kubeconfig_command",
            )

        args = shlex.split(kubeconfig_command)
        if tuple(args[: len(ALLOWED_KUBECONFIG_PREFIX)]) != ALLOWED_KUBECONFIG_PREFIX:
            raise PreconditionError(
                f"Refusing to run unexpected kubeconfig command: {args[:3]}",
                remediation="Check the kubeconfig_command Terraform output",
            )

        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=KUBECONFIG_COMMAND_TIMEOUT_SECONDS,
                check=False,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            raise PreconditionError(
                "Could not fetch cluster credentials", remediation=kubeconfig_command
            ) from e
        if result.returncode != 0:
            raise PreconditionError(
                f"Could not fetch cluster credentials: {result.stderr.strip()}",
                remediation=kubeconfig_command,
            )

        self.load_kubeconfig()
        logger.info("kubectl configured")

    def load_kubeconfig(self) -> None:
        try:
            config.load_kube_config()
        except (ConfigException, OSError) as e:
            raise PreconditionError(
                "Cannot load Kubernetes configuration",
                remediation="az aks get-credentials --resource-group <rg> --name <cluster>",
            ) from e
        self._loaded = True
        self._core = None
        self._batch = None

    @property
    def core(self) -> client.CoreV1Api:
        if not self._loaded:
            self.load_kubeconfig()
        if self._core is None:
            self._core = client.CoreV1Api()
        return self._core

    @property
    def batch(self) -> client.BatchV1Api:
        if not self._loaded:
            self.load_kubeconfig()
        if self._batch is None:
            self._batch = client.BatchV1Api()
        return self._batch

    def ensure_reachable(self, namespace: str) -> None:
        """Raises PreconditionError unless the namespace can be read."""
        try:
            self.core.read_namespace(namespace)
        except ApiException as e:
            raise PreconditionError(
                f"Cannot connect to Kubernetes cluster (namespace {namespace}: {e.reason})",
                remediation="Re-run the kubeconfig_command Terraform output",
            ) from e
        except TransportError as e:
            raise PreconditionError(
                "Cannot connect to Kubernetes cluster",
                remediation="Re-run the kubeconfig_command Terraform output",
            ) from e

    # -------------------------------------------------------------------------
    # Readiness reads (used as poll predicates)
    # -------------------------------------------------------------------------

    def pods_running(self, namespace: str, label_selector: str) -> bool:
        pods = self.core.list_namespaced_pod(namespace, label_selector=label_selector)
        return any(pod.status and pod.status.phase == "Running" for pod in pods.items)

    def load_balancer_ip(self, namespace: str, service_name: str) -> str | None:
        service = self.core.read_namespaced_service(service_name, namespace)
        ingress = (
            service.status.load_balancer.ingress
            if service.status and service.status.load_balancer
            else None
        )
        if not ingress:
            return None
        return ingress[0].ip or ingress[0].hostname

    def load_balancer_services(self, namespace: str) -> list[str]:
        services = self.core.list_namespaced_service(namespace)
        return [
            svc.metadata.name
            for svc in services.items
            if svc.spec is not None and svc.spec.type == "LoadBalancer"
        ]

    # -------------------------------------------------------------------------
    # Helm
    # -------------------------------------------------------------------------

    def uninstall_release(self, release: str, namespace: str) -> bool:
        """``helm uninstall``. Returns success; never raises."""
        try:
            result = subprocess.run(
                [self._helm, "uninstall", release, "-n", namespace, "--wait"],
                capture_output=True,
                text=True,
                timeout=HELM_TIMEOUT_SECONDS,
                check=False,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            logger.debug("helm uninstall failed", extra={"error": str(e)})
            return False
        if result.returncode != 0:
            logger.debug("helm uninstall failed", extra={"stderr": result.stderr.strip()})
            return False
        return True

    # -------------------------------------------------------------------------
    # Secrets and jobs
    # -------------------------------------------------------------------------

    def secret_has_key(self, namespace: str, name: str, key: str) -> bool:
        try:
            secret = self.core.read_namespaced_secret(name, namespace)
        except ApiException as e:
            if e.status == HTTP_NOT_FOUND:
                return False
            raise BackendOperationError(f"Could not read secret {name}: {e.reason}") from e
        except TransportError as e:
            raise BackendOperationError(f"Could not read secret {name}", detail=str(e)) from e
        return bool(secret.data and key in secret.data)

    def create_job(self, namespace: str, manifest: dict[str, Any]) -> None:
        try:
            self.batch.create_namespaced_job(namespace, body=manifest)
        except ApiException as e:
            raise BackendOperationError(
                "Export job submission failed", detail=f"{e.status} {e.reason}: {e.body}"
            ) from e
        except TransportError as e:
            raise BackendOperationError("Export job submission failed", detail=str(e)) from e

    def wait_for_export(self, job: ExportJob) -> ExportJobState:
        """Block on a pod watch until the export is staged, failed or timed out."""
        deadline = time.monotonic() + job.timeout_seconds
        watcher = watch.Watch()
        try:
            for event in watcher.stream(
                self.core.list_namespaced_pod,
                namespace=job.namespace,
                label_selector=f"job-name={job.name}",
                timeout_seconds=job.timeout_seconds,
                _request_timeout=job.timeout_seconds + REQUEST_TIMEOUT_MARGIN_SECONDS,
            ):
                pod = event["object"]
                state = classify_export_pod(pod)
                if state in (ExportJobState.STAGED, ExportJobState.FAILED):
                    job.pod_name = pod.metadata.name
                    return state
                if time.monotonic() >= deadline:
                    break
        except ApiException as e:
            raise BackendOperationError(
                f"Lost the watch on export job {job.name}: {e.reason}"
            ) from e
        except TransportError as e:
            raise BackendOperationError(
                f"Lost the watch on export job {job.name}", detail=str(e)
            ) from e
        finally:
            watcher.stop()
        return ExportJobState.TIMED_OUT

    def copy_from_pod(
        self, namespace: str, pod_name: str, container: str, source: str, destination: Path
    ) -> int:
        """Copy a file out of a running container. Returns bytes written.

        The file is streamed base64-encoded over the exec channel; the copy
        is abandoned after ``COPY_TIMEOUT_SECONDS``.
        """
        deadline = time.monotonic() + COPY_TIMEOUT_SECONDS
        chunks: list[str] = []
        errors: list[str] = []
        try:
            resp = stream(
                self.core.connect_get_namespaced_pod_exec,
                pod_name,
                namespace,
                container=container,
                command=["base64", source],
                stderr=True,
                stdin=False,
                stdout=True,
                tty=False,
                _preload_content=False,
                _request_timeout=COPY_TIMEOUT_SECONDS,
            )
            try:
                while resp.is_open():
                    if time.monotonic() >= deadline:
                        raise BackendOperationError(
                            f"Copying {source} from {pod_name} timed out after "
                            f"{COPY_TIMEOUT_SECONDS}s"
                        )
                    resp.update(timeout=EXEC_READ_TIMEOUT_SECONDS)
                    if resp.peek_stdout():
                        chunks.append(resp.read_stdout())
                    if resp.peek_stderr():
                        errors.append(resp.read_stderr())
            finally:
                resp.close()
        except ApiException as e:
            raise BackendOperationError(
                f"Could not exec into {pod_name}: {e.reason}"
            ) from e
        except (TransportError, WebSocketException) as e:
            raise BackendOperationError(
                f"Copying {source} from {pod_name} failed", detail=str(e)
            ) from e

        if resp.returncode not in (0, None) or errors:
            raise BackendOperationError(
                f"Copying {source} from {pod_name} failed", detail="".join(errors) or None
            )

        data = base64.b64decode("".join(chunks))
        destination.write_bytes(data)
        return len(data)

    def delete_job(self, namespace: str, name: str) -> None:
        """Delete a job and its pods. A job that is already gone is fine."""
        try:
            self.batch.delete_namespaced_job(
                name,
                namespace,
                body=client.V1DeleteOptions(propagation_policy="Foreground"),
            )
        except ApiException as e:
            if e.status == HTTP_NOT_FOUND:
                return
            raise BackendOperationError(f"Could not delete job {name}: {e.reason}") from e
        except TransportError as e:
            raise BackendOperationError(f"Could not delete job {name}", detail=str(e)) from e
