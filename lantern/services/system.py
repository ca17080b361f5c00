import json
import logging
import re
import subprocess
import time
from pathlib import Path
from typing import Any, Dict

import psutil

from lantern.config import NodeConfig
from lantern.errors import ProcessLookupFailed

logger = logging.getLogger(__name__)

GIT_REV_PATTERN = re.compile(r"git rev ([0-9a-fA-F]+)")


class SystemClient:
    """Finds the node process and reads its resource usage and connections."""

    def __init__(self, node: NodeConfig) -> None:
        self.node = node

    def find_process(self) -> psutil.Process:
        if self.node.pid:
            return self._process_by_pid(self.node.pid)
        if self.node.pid_file:
            return self._process_by_pid_file(self.node.pid_file)
        return self._process_by_name_and_port()

    @staticmethod
    def _process_by_pid(pid: int) -> psutil.Process:
        if pid <= 0:
            raise ProcessLookupFailed(f"invalid pid {pid}")
        try:
            proc = psutil.Process(pid)
            running = proc.is_running()
        except psutil.Error as exc:
            raise ProcessLookupFailed(f"failed to get process {pid}: {exc}") from exc
        if not running:
            raise ProcessLookupFailed(f"process {pid} is not running")
        return proc

    def _process_by_pid_file(self, pid_file: str) -> psutil.Process:
        try:
            text = Path(pid_file).read_text().strip()
        except OSError as exc:
            raise ProcessLookupFailed(f"failed to read pid file: {exc}") from exc
        try:
            pid = int(text)
        except ValueError as exc:
            raise ProcessLookupFailed(f"invalid pid in pid file: {text!r}") from exc
        return self._process_by_pid(pid)

    def _process_by_name_and_port(self) -> psutil.Process:
        port = str(self.node.port)
        for proc in psutil.process_iter(["name", "cmdline"]):
            name = proc.info.get("name") or ""
            cmdline = " ".join(proc.info.get("cmdline") or [])
            if self.node.binary in name and port in cmdline:
                return proc
        raise ProcessLookupFailed(
            f"process containing binary '{self.node.binary}' and port '{self.node.port}' not found"
        )

    @staticmethod
    def process_stats(proc: psutil.Process) -> Dict[str, Any]:
        """CPU percent since the previous call, resident memory and uptime in seconds."""
        with proc.oneshot():
            cpu_percent = proc.cpu_percent(interval=None)
            rss = proc.memory_info().rss
            created = proc.create_time()
        return {
            "cpu_percent": cpu_percent,
            "rss": rss,
            "uptime": max(int(time.time() - created), 0),
        }

    @staticmethod
    def connections(proc: psutil.Process) -> list:
        # psutil 6 renamed Process.connections to net_connections
        reader = getattr(proc, "net_connections", None) or proc.connections
        return reader(kind="tcp")

    def node_version(self) -> tuple[str, str]:
        """Return (version, short revision) from `<binary> version`, "N/A" when unknown."""
        try:
            result = subprocess.run(
                [self.node.binary, "version"],
                check=False,
                capture_output=True,
                text=True,
                timeout=5,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug("Unable to run %s version: %s", self.node.binary, exc)
            return "N/A", "N/A"
        if result.returncode != 0:
            return "N/A", "N/A"
        output = (result.stdout or "").strip()
        first_line = output.splitlines()[0].split() if output else []
        version = first_line[1] if len(first_line) > 1 else "N/A"
        match = GIT_REV_PATTERN.search(output)
        revision = match.group(1)[:8] if match else "N/A"
        return version, revision

    @staticmethod
    def detect_p2p(proc: psutil.Process | None, network: str, current: bool = True) -> bool:
        """Read EnableP2P from the node's --config file. Only mainnet may run without P2P."""
        if network != "mainnet" or proc is None:
            return current
        try:
            cmdline = proc.cmdline()
        except psutil.Error:
            return current
        if "p2p" in " ".join(cmdline) or "--config" not in cmdline:
            return current
        index = cmdline.index("--config")
        if index + 1 >= len(cmdline):
            return current
        try:
            node_config = json.loads(Path(cmdline[index + 1]).read_text())
        except OSError:
            return current
        except json.JSONDecodeError:
            return False
        return bool(node_config.get("EnableP2P", False))
