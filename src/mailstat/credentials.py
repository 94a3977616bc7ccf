"""
Password lookup. `MAILSTAT_PASSWORD` wins when set, otherwise a command is
run, by default `pass show mailstat/<email>`. The command keeps the
terminal, so a pinentry or passphrase prompt can ask the user.
"""
import os
import shlex
import subprocess
from typing import Optional

from loguru import logger

from .errors import CredentialError

ENV_PASSWORD = "MAILSTAT_PASSWORD"
DEFAULT_COMMAND = "pass show mailstat/{email}"


def default_command(email: str) -> str:
    return DEFAULT_COMMAND.format(email=email)


class CredentialSource:
    def __init__(self, email: str, command: Optional[str] = None, environ=None):
        self.email = email
        self.command = command or default_command(email)
        self.environ = os.environ if environ is None else environ
        self._secret: Optional[str] = None

    def __call__(self) -> str:
        if self._secret is None:
            self._secret = self.resolve()
        return self._secret

    def resolve(self) -> str:
        secret = self.environ.get(ENV_PASSWORD)
        if secret:
            logger.debug("Using password from {}", ENV_PASSWORD)
            return secret
        try:
            argv = shlex.split(self.command)
        except ValueError as e:
            raise CredentialError(f"bad password command {self.command!r}: {e}") from e
        if not argv:
            raise CredentialError("empty password command")
        logger.debug("Running {}", argv[0])
        try:
            # stdin and stderr stay on the terminal for interactive prompts
            done = subprocess.run(argv, stdout=subprocess.PIPE, check=False)
        except OSError as e:
            raise CredentialError(f"cannot run {argv[0]}: {e}") from e
        if done.returncode != 0:
            raise CredentialError(f"{argv[0]} exited with status {done.returncode}")
        lines = done.stdout.decode("utf-8", errors="replace").splitlines()
        secret = lines[0] if lines else ""
        if not secret:
            raise CredentialError(f"{argv[0]} printed no password for {self.email}")
        return secret
