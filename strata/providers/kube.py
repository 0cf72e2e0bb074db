"""
Kubernetes adapters: workloads as Deployments, exposures as Services.

Handles have the form "<namespace>/<name>".
"""

import logging
import threading
from typing import Any, Callable, Dict, Optional, Tuple

from kubernetes import client
from kubernetes import config as kube_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from ..config import ProviderConfig
from ..errors import AdapterFailure, NotFound
from ..models import ResourceKind
from .base import ProviderAdapter

logger = logging.getLogger(__name__)

_clients: Dict[Optional[str], client.ApiClient] = {}
_clients_lock = threading.Lock()


def api_client(config: ProviderConfig) -> client.ApiClient:
    """
    Return an ApiClient for the kube context named in config.

    Without an explicit context, in-cluster credentials are tried first and
    the local kubeconfig second.
    """
    with _clients_lock:
        cached = _clients.get(config.kube_context)
        if cached is not None:
            return cached

        if config.kube_context:
            api = kube_config.new_client_from_config(context=config.kube_context)
        else:
            try:
                in_cluster = client.Configuration()
                kube_config.load_incluster_config(client_configuration=in_cluster)
                api = client.ApiClient(configuration=in_cluster)
            except ConfigException:
                logger.warning("Failed to load in-cluster config, trying local kubeconfig")
                api = kube_config.new_client_from_config()

        _clients[config.kube_context] = api
        return api


def split_handle(handle: str) -> Tuple[str, str]:
    namespace, sep, name = handle.partition("/")
    if not sep or not namespace or not name:
        raise AdapterFailure(f"Malformed Kubernetes handle: {handle}")
    return namespace, name


def _labels(resource_id: str) -> Dict[str, str]:
    return {"app.kubernetes.io/managed-by": "strata", "strata/resource-id": resource_id}


def _remove_moved(list_all: Callable, delete: Callable, resource_id: str, namespace: str, what: str) -> None:
    """
    Delete copies of a managed object left in namespaces other than namespace.

    The namespace is part of a Kubernetes object's identity, so changing it
    creates a new object and the old one has to be removed explicitly.
    """
    selector = ",".join(f"{key}={value}" for key, value in _labels(resource_id).items())
    found = list_all(label_selector=selector)
    stale = sorted({item.metadata.namespace for item in found.items} - {namespace})
    for old in stale:
        try:
            delete(resource_id, old)
        except ApiException as e:
            if e.status != 404:
                raise
        logger.info(f"Removed {what} {old}/{resource_id} after it moved to {namespace}")



class DeploymentWorkloadAdapter(ProviderAdapter):
    kind = ResourceKind.WORKLOAD
    supports_scaling = True

    def _apps(self, config: ProviderConfig) -> client.AppsV1Api:
        return client.AppsV1Api(api_client(config))

    @staticmethod
    def deployment_body(resource_id: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
        selector = {"app": resource_id}
        return {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {
                "name": resource_id,
                "namespace": parameters["namespace"],
                "labels": {**_labels(resource_id), **selector},
            },
            "spec": {
                "replicas": parameters["replicas"],
                "selector": {"matchLabels": selector},
                "template": {
                    "metadata": {"labels": {**_labels(resource_id), **selector}},
                    "spec": {
                        "containers": [
                            {
                                "name": resource_id,
                                "image": parameters["image"],
                                "ports": [{"containerPort": parameters["container_port"]}],
                                "env": [
                                    {"name": key, "value": value}
                                    for key, value in sorted(parameters.get("env", {}).items())
                                ],
                            }
                        ]
                    },
                },
            },
        }

    def create_or_update(self, resource_id: str, parameters: Dict[str, Any], config: ProviderConfig) -> str:
        apps = self._apps(config)
        namespace = parameters["namespace"]
        body = self.deployment_body(resource_id, parameters)

        try:
            try:
                apps.read_namespaced_deployment(resource_id, namespace)
                exists = True
            except ApiException as e:
                if e.status != 404:
                    raise
                exists = False

            if exists:
                apps.replace_namespaced_deployment(resource_id, namespace, body)
            else:
                apps.create_namespaced_deployment(namespace, body)
                logger.info(f"Created deployment {namespace}/{resource_id}")

            _remove_moved(apps.list_deployment_for_all_namespaces, apps.delete_namespaced_deployment,
                          resource_id, namespace, "deployment")
        except ApiException as e:
            raise AdapterFailure(f"Kubernetes call failed for deployment {resource_id}: {e.reason}", resource_id) from e

        return f"{namespace}/{resource_id}"

    def read(self, handle: str, config: ProviderConfig) -> Dict[str, Any]:
        namespace, name = split_handle(handle)
        try:
            deployment = self._apps(config).read_namespaced_deployment(name, namespace)
        except ApiException as e:
            if e.status == 404:
                raise NotFound(handle) from e
            raise AdapterFailure(f"Failed to read deployment {handle}: {e.reason}") from e

        containers = deployment.spec.template.spec.containers or []
        live: Dict[str, Any] = {"namespace": namespace, "replicas": deployment.spec.replicas}
        if containers:
            container = containers[0]
            live["image"] = container.image
            if container.ports:
                live["container_port"] = container.ports[0].container_port
            live["env"] = {env.name: env.value for env in (container.env or [])}
        return live

    def delete(self, handle: str, config: ProviderConfig) -> None:
        namespace, name = split_handle(handle)
        try:
            self._apps(config).delete_namespaced_deployment(name, namespace)
        except ApiException as e:
            if e.status == 404:
                raise NotFound(handle) from e
            raise AdapterFailure(f"Failed to delete deployment {handle}: {e.reason}") from e

    def scale(self, handle: str, delta: int, config: ProviderConfig) -> None:
        namespace, name = split_handle(handle)
        apps = self._apps(config)
        try:
            current = apps.read_namespaced_deployment_scale(name, namespace).spec.replicas or 0
            target = max(current + delta, 0)
            apps.patch_namespaced_deployment_scale(name, namespace, {"spec": {"replicas": target}})
        except ApiException as e:
            if e.status == 404:
                raise NotFound(handle) from e
            raise AdapterFailure(f"Failed to scale deployment {handle}: {e.reason}") from e
        logger.info(f"Scaled deployment {handle} from {current} to {target}")


class ServiceExposureAdapter(ProviderAdapter):
    kind = ResourceKind.SERVICE_EXPOSURE

    def _core(self, config: ProviderConfig) -> client.CoreV1Api:
        return client.CoreV1Api(api_client(config))

    @staticmethod
    def service_body(resource_id: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {
                "name": resource_id,
                "namespace": parameters["namespace"],
                "labels": _labels(resource_id),
            },
            "spec": {
                "type": parameters["exposure"],
                "selector": {"app": parameters.get("workload") or resource_id},
                "ports": [
                    {
                        "port": parameters["port"],
                        "targetPort": parameters["target_port"],
                        "protocol": "TCP",
                    }
                ],
            },
        }

    def create_or_update(self, resource_id: str, parameters: Dict[str, Any], config: ProviderConfig) -> str:
        core = self._core(config)
        namespace = parameters["namespace"]
        body = self.service_body(resource_id, parameters)

        try:
            try:
                core.read_namespaced_service(resource_id, namespace)
                exists = True
            except ApiException as e:
                if e.status != 404:
                    raise
                exists = False

            if exists:
                core.patch_namespaced_service(resource_id, namespace, body)
            else:
                core.create_namespaced_service(namespace, body)
                logger.info(f"Created service {namespace}/{resource_id}")

            _remove_moved(core.list_service_for_all_namespaces, core.delete_namespaced_service,
                          resource_id, namespace, "service")
        except ApiException as e:
            raise AdapterFailure(f"Kubernetes call failed for service {resource_id}: {e.reason}", resource_id) from e

        return f"{namespace}/{resource_id}"

    def read(self, handle: str, config: ProviderConfig) -> Dict[str, Any]:
        namespace, name = split_handle(handle)
        try:
            service = self._core(config).read_namespaced_service(name, namespace)
        except ApiException as e:
            if e.status == 404:
                raise NotFound(handle) from e
            raise AdapterFailure(f"Failed to read service {handle}: {e.reason}") from e

        selected = (service.spec.selector or {}).get("app")
        live: Dict[str, Any] = {
            "namespace": namespace,
            "exposure": service.spec.type,
            "workload": selected if selected != name else None,
        }
        if service.spec.ports:
            port = service.spec.ports[0]
            live["port"] = port.port
            live["target_port"] = port.target_port
        return live

    def delete(self, handle: str, config: ProviderConfig) -> None:
        namespace, name = split_handle(handle)
        try:
            self._core(config).delete_namespaced_service(name, namespace)
        except ApiException as e:
            if e.status == 404:
                raise NotFound(handle) from e
            raise AdapterFailure(f"Failed to delete service {handle}: {e.reason}") from e
