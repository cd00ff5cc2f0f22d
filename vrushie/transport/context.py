"""Context object shared across worker threads."""

from dataclasses import dataclass

from vrushie.bootstrap.config import ServerConfig
from vrushie.handlers.download import TransferCoordinator
from vrushie.lifecycle.state import ServerLifecycle


@dataclass
class WorkerContext:
    """Dependencies shared across handler threads."""

    coordinator: TransferCoordinator
    lifecycle: ServerLifecycle
    config: ServerConfig
