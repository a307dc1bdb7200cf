"""
Thin wrapper around the git command line.

License: AGPL-3.0
"""

import logging
import subprocess

from .errors import BuildError, BuildFailure

logger = logging.getLogger(__name__)


class GitClient:
    def __init__(self, executable="git", timeout=600):
        self.executable = executable
        self.timeout = timeout

    def _run(self, args, cwd=None, timeout=None):
        # A caller's deadline can only shorten the configured timeout.
        if timeout is None or timeout > self.timeout:
            timeout = self.timeout
        return subprocess.run(
            [self.executable, *args],
            cwd=cwd, capture_output=True, text=True, timeout=timeout,
        )

    def clone(self, url, working_dir, timeout=None):
        """Clone url into working_dir, which must be empty or not exist yet."""
        logger.info("Cloning %s", url)
        try:
            result = self._run(["clone", "--quiet", url, str(working_dir)], timeout=timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise BuildError(BuildFailure.CLONE, f"Could not clone {url}", str(e))
        if result.returncode != 0:
            raise BuildError(BuildFailure.CLONE, f"Could not clone {url}", result.stderr.strip())
        return working_dir

    def checkout(self, working_dir, commit, timeout=None):
        """Check out commit and the submodules it pins."""
        logger.info("Checking out %s", commit)
        try:
            result = self._run(["checkout", "--quiet", commit], cwd=working_dir, timeout=timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise BuildError(BuildFailure.CHECKOUT, f"Could not check out {commit}", str(e))
        if result.returncode != 0:
            raise BuildError(
                BuildFailure.CHECKOUT, f"Commit {commit} not found", result.stderr.strip()
            )

        # Foundry projects keep their dependencies in lib/ as submodules.
        try:
            result = self._run(
                ["submodule", "update", "--init", "--recursive", "--quiet"],
                cwd=working_dir, timeout=timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise BuildError(BuildFailure.CLONE, "Could not fetch submodules", str(e))
        if result.returncode != 0:
            raise BuildError(BuildFailure.CLONE, "Could not fetch submodules", result.stderr.strip())
