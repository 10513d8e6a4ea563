# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Execution of system processes with log redirection and lifecycle management.
"""
import json
import logging
import os
import subprocess
from typing import Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)


class ProcessRunner:
    """
    Manages the execution of a single system process.

    The pid is recorded in a pid file, so a later invocation can inspect and
    stop a process started by an earlier one.
    """
    def __init__(self, name: str, log_file: Optional[str] = None, pid_file: Optional[str] = None):
        """
        Initializes the process runner.

        Args:
            name (str): Identifier for the process.
            log_file (Optional[str]): Path to a file where stdout/stderr will be redirected.
            pid_file (Optional[str]): Path where the pid of the started process is recorded.
        """
        self.name = name
        self.log_file = log_file
        self.pid_file = pid_file
        self.process: Optional[subprocess.Popen] = None
        self._proc: Optional[psutil.Process] = None
        self._log_handle = None
        self._attach()

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc is not None else None

    def start(self,
              command: List[str],
              env: Dict[str, str],
              working_dir: Optional[str] = None) -> int:
        """
        Starts the process.

        Args:
            command (List[str]): Command and arguments to execute.
            env (Dict[str, str]): Environment variables for the process.
            working_dir (Optional[str]): Directory to start the process in.

        Returns:
            int: The pid of the started process.

        Raises:
            OSError: If the command cannot be executed.
        """
        # Ensure working_dir exists
        if working_dir and not os.path.exists(working_dir):
            os.makedirs(working_dir, exist_ok=True)

        stdout = subprocess.DEVNULL
        if self.log_file:
            log_dir = os.path.dirname(self.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            self._close_log()
            self._log_handle = open(self.log_file, 'a')
            stdout = self._log_handle

        logger.info("[%s] Starting command: %s", self.name, ' '.join(command))

        try:
            self.process = subprocess.Popen(
                command,
                env=env,
                cwd=working_dir,
                stdout=stdout,
                stderr=subprocess.STDOUT,
                text=True,
                # Avoid shell=True for security reasons (CWE-78)
                shell=False,
                start_new_session=True,
            )
        except OSError:
            self._close_log()
            raise

        self._proc = psutil.Process(self.process.pid)
        self._write_pid_file()
        return self.process.pid

    def stop(self, timeout: float = 10):
        """
        Stops the process tree by sending SIGTERM, followed by SIGKILL if it doesn't stop.

        Args:
            timeout (float): Seconds to wait for termination before killing.
        """
        if self._proc is not None and self.is_running():
            logger.info("[%s] Stopping process %d", self.name, self._proc.pid)
            try:
                procs = [self._proc] + self._proc.children(recursive=True)
            except psutil.NoSuchProcess:
                procs = []
            for proc in procs:
                try:
                    proc.terminate()
                except psutil.NoSuchProcess:
                    pass
            _, alive = psutil.wait_procs(procs, timeout=timeout)
            if alive:
                logger.warning("[%s] Process did not terminate, killing...", self.name)
                for proc in alive:
                    try:
                        proc.kill()
                    except psutil.NoSuchProcess:
                        pass
                psutil.wait_procs(alive, timeout=timeout)

        if self.process is not None:
            # Reap our own child so the exit code is available
            try:
                self.process.wait(timeout=1)
            except subprocess.TimeoutExpired:
                pass
        self._close_log()
        self._remove_pid_file()

    def is_running(self) -> bool:
        """
        Checks if the process is currently running.

        Returns:
            bool: True if running, False otherwise.
        """
        if self.process is not None:
            return self.process.poll() is None
        if self._proc is None:
            return False
        try:
            return self._proc.is_running() and self._proc.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False

    def get_exit_code(self) -> Optional[int]:
        """
        Gets the exit code of the process.

        Returns:
            Optional[int]: Exit code if a process started by this runner finished, None otherwise.
        """
        if self.process is not None:
            return self.process.poll()
        return None

    def _attach(self):
        """
        Picks up a process recorded in the pid file by an earlier invocation.
        The recorded create time guards against pid reuse.
        """
        if not self.pid_file or not os.path.exists(self.pid_file):
            return
        with open(self.pid_file, 'r') as f:
            record = json.load(f)
        try:
            proc = psutil.Process(record['pid'])
            if abs(proc.create_time() - record['create_time']) < 1.0:
                self._proc = proc
        except psutil.NoSuchProcess:
            self._remove_pid_file()

    def _write_pid_file(self):
        if not self.pid_file:
            return
        os.makedirs(os.path.dirname(self.pid_file), exist_ok=True)
        with open(self.pid_file, 'w') as f:
            json.dump({'pid': self._proc.pid, 'create_time': self._proc.create_time()}, f)

    def _remove_pid_file(self):
        if self.pid_file and os.path.exists(self.pid_file):
            os.remove(self.pid_file)

    def _close_log(self):
        if self._log_handle is not None:
            self._log_handle.close()
            self._log_handle = None
