"""IoC container wiring the management service into every component."""

import inspect
import threading
import typing
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Type, TypeVar

T = TypeVar("T")


@dataclass
class ServiceRegistration:
    """Registration info for a service."""

    factory: Callable[..., Any]
    singleton: bool = True
    instance: Optional[Any] = None


class DependencyContainer:
    """
    IoC container for dependency injection.

    Usage:
        container = DependencyContainer()
        container.register(ManagementService, instance=FakeManagementService())
        coordinator = container.resolve(ExportCoordinator)

    Constructor parameters are resolved from their type annotations;
    ``Optional[X]`` resolves ``X`` when it is registered.
    """

    def __init__(self):
        self._registrations: Dict[Type, ServiceRegistration] = {}
        self._lock = threading.RLock()

    def register(
        self,
        interface: Type[T],
        implementation: Optional[Type[T]] = None,
        factory: Optional[Callable[..., T]] = None,
        singleton: bool = True,
        instance: Optional[T] = None,
    ) -> "DependencyContainer":
        """Register an implementation, factory, or ready instance for ``interface``."""
        if instance is not None:
            registration = ServiceRegistration(factory=lambda: instance, instance=instance)
        elif factory is not None or implementation is not None:
            registration = ServiceRegistration(factory=factory or implementation, singleton=singleton)
        else:
            raise ValueError("Must provide implementation, factory, or instance")

        with self._lock:
            self._registrations[interface] = registration
        return self

    def resolve(self, interface: Type[T]) -> T:
        """Resolve a service instance, building concrete classes on demand."""
        with self._lock:
            reg = self._registrations.get(interface)
            if reg is None:
                if inspect.isclass(interface) and not inspect.isabstract(interface):
                    reg = ServiceRegistration(factory=interface)
                    self._registrations[interface] = reg
                else:
                    raise KeyError(f"No registration for {interface}")

            if reg.singleton and reg.instance is not None:
                return reg.instance

            instance = self._create_instance(reg.factory)
            if reg.singleton:
                reg.instance = instance
            return instance

    def _create_instance(self, factory: Callable) -> Any:
        try:
            sig = inspect.signature(factory)
        except ValueError:
            return factory()

        kwargs = {}
        for name, param in sig.parameters.items():
            annotation = param.annotation
            if annotation is inspect.Parameter.empty:
                continue
            optional = False
            if typing.get_origin(annotation) is typing.Union:
                members = [a for a in typing.get_args(annotation) if a is not type(None)]
                optional = len(members) < len(typing.get_args(annotation))
                annotation = members[0] if len(members) == 1 else annotation

            if annotation in self._registrations or (
                inspect.isclass(annotation) and not optional
            ):
                try:
                    kwargs[name] = self.resolve(annotation)
                    continue
                except (KeyError, TypeError):
                    if param.default is inspect.Parameter.empty:
                        raise
            elif param.default is inspect.Parameter.empty:
                raise KeyError(f"Cannot resolve parameter '{name}' of {factory}")

        return factory(**kwargs)

    def has(self, interface: Type) -> bool:
        """Check if service is registered."""
        return interface in self._registrations

    def reset(self) -> None:
        """Drop all singleton instances."""
        with self._lock:
            for reg in self._registrations.values():
                reg.instance = None


_container: Optional[DependencyContainer] = None


def get_container() -> DependencyContainer:
    """Get the global container instance."""
    global _container
    if _container is None:
        _container = create_default_container()
    return _container


def set_container(container: Optional[DependencyContainer]) -> None:
    """Set the global container (useful for testing)."""
    global _container
    _container = container


def create_default_container(config=None, fake: bool = False) -> DependencyContainer:
    """Create container with default registrations.

    Args:
        config: EngineConfig to use (defaults apply when omitted)
        fake: Use the in-memory hypervisor, seeded with a VM named "demo"
    """
    from .backends.fake_backend import FakeManagementService
    from .backends.wmi_backend import WmiManagementService
    from .interfaces.management import ManagementService
    from .models import EngineConfig

    config = config or EngineConfig()
    container = DependencyContainer()
    container.register(EngineConfig, instance=config)

    if fake:
        container.register(ManagementService, instance=FakeManagementService.with_vms("demo"))
    else:
        container.register(ManagementService, factory=lambda: WmiManagementService.from_config(config))

    return container
