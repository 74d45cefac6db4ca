"""Hyper-V WMI management backend implementation."""

import re
from typing import Any, Dict, List, Optional

try:
    import wmi
except ImportError:
    wmi = None

from ..interfaces.management import (
    InstanceAmbiguous,
    InstanceNotFound,
    InvocationResult,
    JobHandle,
    JobState,
    JobStatus,
    ManagedInstance,
    ManagementService,
    TransportError,
)

# Setting-data arguments passed as embedded instances rather than references
EMBEDDED_ARGUMENTS = {
    "SnapshotSettings": "Msvm_VirtualSystemSnapshotSettingData",
    "ExportSettingData": "Msvm_VirtualSystemExportSettingData",
}

WBEM_E_NOT_FOUND = 0x80041002
WBEM_E_INVALID_OBJECT_PATH = 0x8004103A
# RPC server unavailable, RPC call failed, WMI transport failure
TRANSIENT_HRESULTS = {0x800706BA, 0x800706BE, 0x80041015}

_INSTANCE_ID = re.compile(r'InstanceID="([^"]+)"')


def _hresult(exc: Exception) -> Optional[int]:
    com_error = getattr(exc, "com_error", None) or exc
    excepinfo = getattr(com_error, "excepinfo", None)
    if excepinfo and len(excepinfo) > 5 and excepinfo[5]:
        return excepinfo[5] & 0xFFFFFFFF
    hresult = getattr(com_error, "hresult", None)
    return hresult & 0xFFFFFFFF if hresult is not None else None


def _wql_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, int):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


class WmiManagementService(ManagementService):
    """Management service backed by the Hyper-V WMI provider.

    COM must be initialised on the calling thread (``pythoncom.CoInitialize``)
    before using this backend from anything but the main thread.
    """

    name = "wmi"

    def __init__(
        self,
        host: str = ".",
        namespace: str = "root\\virtualization\\v2",
        username: Optional[str] = None,
        password: Optional[str] = None,
    ):
        self.host = host
        self.namespace = namespace
        self.username = username
        self.password = password
        self._conn = None

    @classmethod
    def from_config(cls, config) -> "WmiManagementService":
        connection = config.connection
        return cls(
            host=connection.host,
            namespace=connection.namespace,
            username=connection.username,
            password=connection.password,
        )

    def connect(self) -> None:
        """Open the WMI connection."""
        if self._conn is not None:
            return
        if wmi is None:
            raise RuntimeError("WMI not installed. Install with: pip install hvbackup[hyperv]")

        kwargs: Dict[str, Any] = {"namespace": self.namespace}
        if self.host not in (".", "localhost"):
            kwargs["computer"] = self.host
        if self.username:
            kwargs["user"] = self.username
            kwargs["password"] = self.password or ""
        try:
            self._conn = wmi.WMI(**kwargs)
        except wmi.x_wmi as e:
            raise self._translate(e, f"Failed to connect to {self.host}\\{self.namespace}")

    def close(self) -> None:
        self._conn = None

    @property
    def conn(self):
        if self._conn is None:
            self.connect()
        return self._conn

    def invoke_method(self, service_class: str, method: str, **args: Any) -> InvocationResult:
        service = self._single(self._query(f"SELECT * FROM {service_class}"), service_class)
        try:
            wmi_method = getattr(service, method)
            call_args = {name: self._argument(name, value) for name, value in args.items()}
            values = wmi_method(**call_args)
        except wmi.x_wmi as e:
            raise self._translate(e, f"{service_class}.{method} failed")

        names = [name for name, _ in wmi_method.out_parameter_names]
        outputs = dict(zip(names, values))
        return_value = int(outputs.pop("ReturnValue", 0))

        job = None
        job_path = outputs.get("Job")
        if job_path:
            match = _INSTANCE_ID.search(job_path)
            job = JobHandle(
                job_id=match.group(1) if match else job_path,
                method=method,
                path=job_path,
            )
        for key, value in list(outputs.items()):
            if isinstance(value, str) and value.startswith("\\\\") and key != "Job":
                outputs[key] = self._instance_at(value)

        return InvocationResult(return_value=return_value, outputs=outputs, job=job)

    def get_associated(
        self,
        instance_path: str,
        result_class: str,
        assoc_class: str,
    ) -> List[ManagedInstance]:
        wql = (
            f"ASSOCIATORS OF {{{instance_path}}} "
            f"WHERE AssocClass = {assoc_class} ResultClass = {result_class}"
        )
        return [self._to_instance(obj) for obj in self._query(wql)]

    def query_instance(self, class_name: str, **filters: Any) -> ManagedInstance:
        wql = f"SELECT * FROM {class_name}"
        if filters:
            clauses = [f"{key} = {_wql_literal(value)}" for key, value in filters.items()]
            wql += " WHERE " + " AND ".join(clauses)
        return self._to_instance(self._single(self._query(wql), f"{class_name} {filters}"))

    def get_job(self, job: JobHandle) -> JobStatus:
        wql = f"SELECT * FROM CIM_ConcreteJob WHERE InstanceID = {_wql_literal(job.job_id)}"
        obj = self._single(self._query(wql), f"job {job.job_id}")
        error_code = getattr(obj, "ErrorCode", None)
        return JobStatus(
            state=JobState.from_cim(int(obj.JobState)),
            error_code=int(error_code) if error_code else None,
            error_description=getattr(obj, "ErrorDescription", None) or None,
            percent_complete=int(getattr(obj, "PercentComplete", 0) or 0),
        )

    def _query(self, wql: str) -> list:
        try:
            return self.conn.query(wql)
        except wmi.x_wmi as e:
            raise self._translate(e, f"Query failed: {wql}")

    @staticmethod
    def _single(results: list, what: str):
        if not results:
            raise InstanceNotFound(f"No instance for {what}")
        if len(results) > 1:
            raise InstanceAmbiguous(f"{len(results)} instances for {what}", count=len(results))
        return results[0]

    def _argument(self, name: str, value: Any) -> Any:
        class_name = EMBEDDED_ARGUMENTS.get(name)
        if class_name is None or not isinstance(value, dict):
            return value
        instance = getattr(self.conn, class_name).ole_object.SpawnInstance_()
        for key, item in value.items():
            instance.Properties_.Item(key).Value = item
        return instance.GetText_(1)

    def _instance_at(self, path: str) -> ManagedInstance:
        try:
            obj = wmi.WMI(moniker=path)
        except wmi.x_wmi as e:
            raise self._translate(e, f"Object path not found: {path}")
        return self._to_instance(obj)

    @staticmethod
    def _to_instance(obj) -> ManagedInstance:
        ole_path = obj.ole_object.Path_
        properties = {name: getattr(obj, name) for name in obj.properties}
        return ManagedInstance(class_name=ole_path.Class, path=ole_path.Path, properties=properties)

    @staticmethod
    def _translate(exc: Exception, message: str) -> TransportError:
        hresult = _hresult(exc)
        if hresult in (WBEM_E_NOT_FOUND, WBEM_E_INVALID_OBJECT_PATH):
            return InstanceNotFound(f"{message}: {exc}")
        return TransportError(f"{message}: {exc}", transient=hresult in TRANSIENT_HRESULTS)
