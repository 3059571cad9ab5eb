from __future__ import annotations

import logging
import os
import signal
import threading
from dataclasses import dataclass

from kubernetes.client import ApiException

from platform_controller.src.appmanager import AppManagerController
from platform_controller.src.config import ControllerConfig, load_config
from platform_controller.src.controller import Controller
from platform_controller.src.crd import CRDProvisioningError, provision_crds
from platform_controller.src.health import start_health_server
from platform_controller.src.informer import Informer
from platform_controller.src.kube import KubeClients, build_clients, load_kube_configuration
from platform_controller.src.logs import configure_logging
from platform_controller.src.metrics import METRICS
from platform_controller.src.recorder import KubeEventRecorder
from platform_controller.src.release import ReleaseController
from platform_controller.src.resources import (
    DEPLOYMENT_API_VERSION,
    DEPLOYMENT_KIND,
    PLAN_KIND,
    PLAN_PLURAL,
    PLATFORM_API_VERSION,
    PLATFORM_GROUP,
    PLATFORM_VERSION,
    RELEASE_KIND,
    RELEASE_PLURAL,
)

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlatformInformers:
    deployments: Informer
    plans: Informer
    releases: Informer

    def all(self) -> tuple[Informer, ...]:
        return (self.deployments, self.plans, self.releases)


def build_informers(clients: KubeClients, config: ControllerConfig) -> PlatformInformers:
    if config.watch_namespace:
        deployments = Informer(
            clients.apps.list_namespaced_deployment,
            resource="deployments",
            api_version=DEPLOYMENT_API_VERSION,
            kind=DEPLOYMENT_KIND,
            namespace=config.watch_namespace,
        )
    else:
        deployments = Informer(
            clients.apps.list_deployment_for_all_namespaces,
            resource="deployments",
            api_version=DEPLOYMENT_API_VERSION,
            kind=DEPLOYMENT_KIND,
        )

    plans = Informer(
        clients.custom.list_cluster_custom_object,
        resource="plans",
        api_version=PLATFORM_API_VERSION,
        kind=PLAN_KIND,
        group=PLATFORM_GROUP,
        version=PLATFORM_VERSION,
        plural=PLAN_PLURAL,
    )
    releases = Informer(
        clients.custom.list_cluster_custom_object,
        resource="releases",
        api_version=PLATFORM_API_VERSION,
        kind=RELEASE_KIND,
        group=PLATFORM_GROUP,
        version=PLATFORM_VERSION,
        plural=RELEASE_PLURAL,
    )
    return PlatformInformers(deployments=deployments, plans=plans, releases=releases)


def build_controllers(
    clients: KubeClients,
    informers: PlatformInformers,
    config: ControllerConfig,
) -> tuple[AppManagerController, ReleaseController]:
    common = {
        "worker_restart_period": float(config.worker_restart_period_seconds),
        "shutdown_timeout": float(config.shutdown_timeout_seconds),
    }
    app_manager = AppManagerController(
        deployments=informers.deployments,
        plans=informers.plans,
        core_api=clients.core,
        apps_api=clients.apps,
        networking_api=clients.networking,
        recorder=KubeEventRecorder(clients.core, "app-manager-controller"),
        default_domain=config.default_domain,
        **common,
    )
    release = ReleaseController(
        releases=informers.releases,
        deployments=informers.deployments,
        custom_api=clients.custom,
        apps_api=clients.apps,
        recorder=KubeEventRecorder(clients.core, "release-controller"),
        **common,
    )
    return app_manager, release


def run_platform(
    clients: KubeClients,
    config: ControllerConfig,
    shutdown_event: threading.Event,
) -> None:
    """Run informers and controllers until *shutdown_event* is set."""
    informers = build_informers(clients, config)
    app_manager, release = build_controllers(clients, informers, config)
    workers: dict[Controller, int] = {
        app_manager: config.app_manager_workers,
        release: config.release_workers,
    }

    health_server = start_health_server(
        ready_events={controller.name: controller.ready for controller in workers},
        port=config.health_port,
    )

    threads: list[threading.Thread] = []
    for informer in informers.all():
        thread = threading.Thread(
            target=informer.run,
            args=(shutdown_event,),
            name=f"informer-{informer.resource}",
            daemon=True,
        )
        thread.start()
        threads.append(thread)
    for controller, count in workers.items():
        thread = threading.Thread(
            target=controller.run,
            args=(count, shutdown_event),
            name=f"controller-{controller.name}",
            daemon=True,
        )
        thread.start()
        threads.append(thread)

    # Short waits keep the main thread responsive to signals.
    while not shutdown_event.wait(timeout=1.0):
        pass

    for informer in informers.all():
        informer.request_stop()
    for thread in threads:
        thread.join(timeout=config.shutdown_timeout_seconds)
        if thread.is_alive():
            LOGGER.error("Thread %s did not stop within %ss", thread.name, config.shutdown_timeout_seconds)
    health_server.shutdown()


def main() -> None:
    """Controller entrypoint: configure logging, provision CRDs and run the controllers."""
    config = load_config()
    configure_logging(config.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    clients = build_clients()

    if config.provision_crds:
        try:
            provision_crds(
                clients.apiextensions,
                interval=float(config.crd_poll_interval_seconds),
                timeout=float(config.crd_ready_timeout_seconds),
            )
        except (CRDProvisioningError, ApiException) as exc:
            LOGGER.error("Failed provisioning custom resource definitions: %s", exc)
            raise SystemExit(1) from exc

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    run_platform(clients, config, shutdown_event)
    LOGGER.info("Controller stopped")


if __name__ == "__main__":
    main()
