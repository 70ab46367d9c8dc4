import subprocess
import os
import shlex
import shutil
import logging
from typing import Optional
from typing import Union
from logger import logger
from errors import CommandError

Cmd = Union[str, list[str]]


class Result:
    def __init__(self, out: str, err: str, returncode: int):
        self.out = out
        self.err = err
        self.returncode = returncode

    def __str__(self) -> str:
        return f"(returncode: {self.returncode}, error: {self.err})"

    def success(self) -> bool:
        return self.returncode == 0


def split_prepend_cmd(prepend_cmd: Optional[str]) -> list[str]:
    # "sudo -E" -> ["sudo", "-E"]
    if not prepend_cmd:
        return []
    return shlex.split(prepend_cmd)


def cmd_to_args(cmd: Cmd) -> list[str]:
    if isinstance(cmd, str):
        return shlex.split(cmd)
    return list(cmd)


class Host:
    """Runs commands on the local machine.

    A `prepend_cmd` (for example "sudo -E") is put in front of every command,
    which is how privileged operations on the host are expressed.
    """

    def __init__(self, hostname: str = "localhost", prepend_cmd: Optional[str] = None):
        self._hostname = hostname
        self._prepend = split_prepend_cmd(prepend_cmd)

    def elevated(self, prepend_cmd: Optional[str]) -> 'Host':
        return Host(self._hostname, prepend_cmd)

    def _args(self, cmd: Cmd) -> list[str]:
        return self._prepend + cmd_to_args(cmd)

    def run(
        self,
        cmd: Cmd,
        log_level: int = logging.DEBUG,
        env: Optional[dict[str, str]] = None,
        input: Optional[str] = None,
        quiet: bool = False,
    ) -> Result:
        args = self._args(cmd)
        if not quiet and log_level >= 0:
            logger.log(log_level, f"running command {shlex.join(args)} on {self._hostname}")

        full_env = os.environ.copy()
        if env:
            full_env.update(env)

        try:
            proc = subprocess.run(args, capture_output=True, text=True, input=input, env=full_env, check=False)
        except FileNotFoundError as e:
            ret_val = Result("", str(e), 127)
        else:
            ret_val = Result(proc.stdout, proc.stderr, proc.returncode)

        if not quiet and log_level >= 0:
            logger.log(log_level, ret_val)
        return ret_val

    def run_or_raise(
        self,
        cmd: Cmd,
        env: Optional[dict[str, str]] = None,
        input: Optional[str] = None,
    ) -> Result:
        ret = self.run(cmd, env=env, input=input)
        if not ret.success():
            raise CommandError(shlex.join(self._args(cmd)), ret.returncode, ret.out, ret.err)
        logger.debug(ret.out.strip())
        return ret

    def popen(self, cmd: Cmd, env: Optional[dict[str, str]] = None) -> subprocess.Popen[bytes]:
        """Starts a long-lived process. Output goes to stderr, stdout carries results."""
        args = self._args(cmd)
        full_env = os.environ.copy()
        if env:
            full_env.update(env)
        logger.debug(f"starting process {shlex.join(args)} on {self._hostname}")
        return subprocess.Popen(args, stdout=subprocess.DEVNULL, stderr=None, env=full_env)

    def write(self, fn: str, contents: str) -> None:
        dir_path = os.path.dirname(fn)
        if not self._prepend:
            if dir_path and not os.path.exists(dir_path):
                os.makedirs(dir_path)
            with open(fn, "w") as f:
                f.write(contents)
        else:
            if dir_path:
                self.run_or_raise(["mkdir", "-p", dir_path])
            self.run_or_raise(["tee", fn], input=contents)

    def read_file(self, file_name: str) -> str:
        if not self._prepend:
            with open(file_name) as f:
                return f.read()
        return self.run_or_raise(["cat", file_name]).out

    def remove(self, path: str) -> None:
        if not self._prepend:
            if os.path.isdir(path):
                shutil.rmtree(path)
            elif os.path.exists(path):
                os.remove(path)
        else:
            self.run_or_raise(["rm", "-rf", path])

    def exists(self, path: str) -> bool:
        if not self._prepend:
            return os.path.exists(path)
        return self.run(["test", "-e", path]).success()


def LocalHost() -> Host:
    return Host("localhost")


def ElevatedHost(prepend_cmd: Optional[str]) -> Host:
    return Host("localhost", prepend_cmd)
