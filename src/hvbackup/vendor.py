"""Helpers shared by the managers for calling the management service.

Transport exceptions are converted here so that none escape the engine.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

from .errors import IntegrityError, JobError, NotFound
from .interfaces.management import (
    InstanceNotFound,
    InvocationResult,
    ManagedInstance,
    ManagementService,
    TransportError,
)

AFFECTED_JOB_ELEMENT = "Msvm_AffectedJobElement"


def invoke(
    service: ManagementService,
    service_class: str,
    method: str,
    operation: str,
    target: Optional[str] = None,
    **args: Any,
) -> InvocationResult:
    """Invoke a vendor method, mapping transport failures to engine errors."""
    try:
        return service.invoke_method(service_class, method, **args)
    except InstanceNotFound as e:
        raise NotFound(str(e), operation=operation, target=target)
    except TransportError as e:
        raise JobError(f"{service_class}.{method} failed: {e}", operation=operation, target=target)


def associated(
    service: ManagementService,
    instance_path: str,
    result_class: str,
    assoc_class: str,
    operation: str,
    target: Optional[str] = None,
) -> List[ManagedInstance]:
    """Associated instances, or NotFound when ``instance_path`` is gone."""
    try:
        return service.get_associated(instance_path, result_class, assoc_class)
    except InstanceNotFound as e:
        raise NotFound(str(e), operation=operation, target=target)
    except TransportError as e:
        raise JobError(f"association query failed: {e}", operation=operation, target=target)


def expect_single(
    instances: List[ManagedInstance],
    what: str,
    operation: str,
    target: Optional[str] = None,
) -> ManagedInstance:
    """The only element of ``instances``; any other count is an IntegrityError."""
    if len(instances) != 1:
        raise IntegrityError(
            f"expected exactly one {what}, vendor returned {len(instances)}",
            count=len(instances),
            operation=operation,
            target=target,
        )
    return instances[0]


def resulting_instance(
    service: ManagementService,
    result: InvocationResult,
    output_key: str,
    result_class: str,
    operation: str,
    target: Optional[str] = None,
) -> ManagedInstance:
    """Locate the single object produced by a finished method call.

    Synchronous completions report it in ``outputs``; asynchronous ones are
    found through the job's affected elements.
    """
    if result.job is None or result.job.path is None:
        produced = result.outputs.get(output_key)
        if isinstance(produced, ManagedInstance):
            return produced
        raise IntegrityError(
            f"vendor reported no {output_key}", count=0, operation=operation, target=target
        )

    instances = associated(
        service, result.job.path, result_class, AFFECTED_JOB_ELEMENT, operation, target
    )
    return expect_single(instances, result_class, operation, target)


def parse_cim_datetime(value: Any) -> Optional[datetime]:
    """Parse a CIM DATETIME string (``yyyymmddHHMMSS.mmmmmmsUUU``)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    text = str(value)
    if len(text) < 21:
        return None
    try:
        stamp = datetime.strptime(text[:21], "%Y%m%d%H%M%S.%f")
        offset = int(text[21:25]) if len(text) >= 25 else 0
    except ValueError:
        return None
    return stamp.replace(tzinfo=timezone(timedelta(minutes=offset)))


def format_cim_datetime(value: datetime) -> str:
    """Format an aware datetime as a CIM DATETIME string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    minutes = int(value.utcoffset().total_seconds() // 60)
    return value.strftime("%Y%m%d%H%M%S.%f") + f"{minutes:+04d}"
