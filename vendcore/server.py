"""gRPC server entry point for the vending service.

Supports both TCP and Unix Domain Socket (UDS) transports.
"""

import logging
import os
import signal
from concurrent import futures
from typing import Optional

import grpc
import structlog
from grpc_health.v1 import health, health_pb2, health_pb2_grpc

from .app import VendingApp
from .config import Settings
from .service import SERVICE_NAME, VendingHandler, add_VendingServicer_to_server


def configure_logging(level: str = "info") -> None:
    """Configure structlog with JSON rendering and ISO timestamps."""
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


def get_transport_config(settings: Settings) -> tuple[str, str]:
    """Get the listen address for the configured transport.

    Returns:
        Tuple of (transport_type, address)
        - For TCP: ("tcp", "[::]:{port}")
        - For UDS: ("uds", "unix:{socket_path}")
    """
    if settings.transport == "uds":
        socket_path = f"{settings.uds_base_path}/vending.sock"

        os.makedirs(os.path.dirname(socket_path), exist_ok=True)

        # Remove stale socket file if exists
        if os.path.exists(socket_path):
            os.remove(socket_path)

        return ("uds", f"unix:{socket_path}")

    return ("tcp", f"[::]:{settings.port}")


def create_server(
    app: VendingApp,
    max_workers: int = 10,
) -> tuple[grpc.Server, str]:
    """Create a gRPC server with the vending service and health checking.

    Returns:
        Tuple of (server, address) where address includes the transport prefix
    """
    _, address = get_transport_config(app.settings)

    server = grpc.server(futures.ThreadPoolExecutor(max_workers=max_workers))

    add_VendingServicer_to_server(VendingHandler(app.engine, app.queries), server)

    health_servicer = health.HealthServicer()
    health_pb2_grpc.add_HealthServicer_to_server(health_servicer, server)
    health_servicer.set("", health_pb2.HealthCheckResponse.SERVING)
    health_servicer.set(SERVICE_NAME, health_pb2.HealthCheckResponse.SERVING)

    server.add_insecure_port(address)

    return server, address


def run_server(settings: Optional[Settings] = None, grace: float = 5.0) -> None:
    """Run the vending service until SIGTERM/SIGINT, then close the store."""
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    logger = structlog.get_logger()

    with VendingApp(settings) as app:
        server, address = create_server(app)
        server.start()
        logger.info("server_started", service=SERVICE_NAME, transport=settings.transport, address=address)

        def stop(signum, frame):
            logger.info("server_stopping", signal=signum)
            server.stop(grace)

        signal.signal(signal.SIGTERM, stop)
        signal.signal(signal.SIGINT, stop)
        server.wait_for_termination()


def main() -> None:
    run_server()


if __name__ == "__main__":
    main()
