"""VMware vSphere/vCenter client connection and power operations."""

from __future__ import annotations

import ssl
import time
from typing import Optional

from pyVim.connect import Disconnect, SmartConnect
from pyVmomi import vim, vmodl

from vmimport.utils.logging import get_logger

logger = get_logger(__name__)

POWERED_ON = "poweredOn"
POWERED_OFF = "poweredOff"


def _ssl_context(insecure: bool) -> Optional[ssl.SSLContext]:
    if not insecure:
        return None
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


class VSphereClient:
    """One vCenter session, opened per engine invocation.

    Login failures are raised at once; any other connection error is
    retried with exponential backoff. Callers close the session with
    :meth:`disconnect` (or by using the client as a context manager).
    """

    def __init__(self, max_retries: int = 3, backoff: float = 2.0):
        self.max_retries = max_retries
        self.backoff = backoff
        self._si: Optional[vim.ServiceInstance] = None
        self._content: Optional[vim.ServiceInstanceContent] = None
        self._host: str = ""

    @property
    def connected(self) -> bool:
        return self._si is not None

    @property
    def content(self) -> vim.ServiceInstanceContent:
        if self._content is None:
            raise ConnectionError("No vCenter session; call connect() first")
        return self._content

    def connect(
        self,
        host: str,
        username: str,
        password: str,
        port: int = 443,
        insecure: bool = False,
    ) -> vim.ServiceInstance:
        """Open a session on ``host``.

        Raises:
            ConnectionError: If the credentials are rejected or every attempt fails
        """
        self._host = host
        context = _ssl_context(insecure)

        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            logger.info(f"Connecting to vCenter {host}:{port} ({attempt}/{self.max_retries})")
            try:
                si = SmartConnect(host=host, user=username, pwd=password, port=port, sslContext=context)
            except (vim.fault.InvalidLogin, vim.fault.NoPermission) as e:
                raise ConnectionError(f"vCenter {host} rejected the credentials: {e.msg}") from e
            except Exception as e:
                last_error = e
                if attempt == self.max_retries:
                    break
                delay = self.backoff ** attempt
                logger.warning(f"vCenter {host} unreachable: {e}. Next attempt in {delay:.0f}s")
                time.sleep(delay)
                continue

            self._si = si
            self._content = si.RetrieveContent()
            logger.info(f"Connected to vCenter {host} (API {self._content.about.apiVersion})")
            return si

        raise ConnectionError(f"Could not connect to vCenter {host} after {self.max_retries} attempts: {last_error}")

    def disconnect(self):
        """Close the session; a no-op when not connected."""
        if self._si is None:
            return
        try:
            Disconnect(self._si)
            logger.debug(f"Disconnected from vCenter {self._host}")
        except Exception as e:
            logger.warning(f"Disconnect from vCenter {self._host} failed: {e}")
        finally:
            self._si = None
            self._content = None

    def session_alive(self) -> bool:
        """Return True when the current session is still authenticated."""
        try:
            return self.content.sessionManager.currentSession is not None
        except vmodl.fault.NotAuthenticated:
            return False

    def get_vm_by_id(self, moref_id: str) -> vim.VirtualMachine:
        """Return a VM by managed object id (e.g. ``vm-2782``).

        Raises:
            ValueError: If the id does not resolve to a VM
        """
        vm = vim.VirtualMachine(moref_id, self.content.propertyCollector._stub)
        try:
            _ = vm.name
        except vmodl.fault.ManagedObjectNotFound:
            raise ValueError(f"VM '{moref_id}' not found in vCenter") from None
        return vm

    def get_vm_by_name(self, vm_name: str) -> vim.VirtualMachine:
        """Search every datacenter for a VM by name."""
        view = self.content.viewManager.CreateContainerView(
            self.content.rootFolder, [vim.VirtualMachine], True
        )
        try:
            for vm in view.view:
                if vm.name == vm_name:
                    return vm
        finally:
            view.Destroy()
        raise ValueError(f"VM '{vm_name}' not found in vCenter")

    def wait_for_task(self, task: vim.Task, timeout: int = 600) -> None:
        """Wait for a vSphere task to complete.

        Raises:
            RuntimeError: If task fails
            TimeoutError: If the task does not finish in time
        """
        start = time.time()
        while task.info.state in (vim.TaskInfo.State.running, vim.TaskInfo.State.queued):
            if time.time() - start > timeout:
                raise TimeoutError(f"Task timed out after {timeout}s: {task.info.descriptionId}")
            time.sleep(2)

        if task.info.state == vim.TaskInfo.State.error:
            raise RuntimeError(f"Task failed: {task.info.error.msg}")

    def power_on(self, vm: vim.VirtualMachine) -> None:
        """Power on a VM unless it is already running."""
        if str(vm.runtime.powerState) == POWERED_ON:
            return
        logger.info(f"Powering on VM '{vm.name}'")
        self.wait_for_task(vm.PowerOnVM_Task())

    def power_off(self, vm: vim.VirtualMachine) -> None:
        """Power off a VM unless it is already stopped."""
        if str(vm.runtime.powerState) == POWERED_OFF:
            return
        logger.info(f"Powering off VM '{vm.name}'")
        self.wait_for_task(vm.PowerOffVM_Task())

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.disconnect()
