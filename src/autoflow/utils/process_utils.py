"""Stopping shell actions together with every process they started."""

import logging
import os
import signal
import subprocess

logger = logging.getLogger(__name__)


def kill_process_tree(pid: int, sig: int = signal.SIGTERM) -> None:
    """Signal the process group led by ``pid``, or just ``pid`` if it leads none.

    Shell actions start with start_new_session=True, so the group covers the
    shell and everything it spawned. A process that already exited is ignored.
    """
    try:
        os.killpg(os.getpgid(pid), sig)
    except (ProcessLookupError, PermissionError):
        return
    except OSError:
        try:
            os.kill(pid, sig)
        except (ProcessLookupError, PermissionError):
            return


def terminate_process_group(proc: subprocess.Popen, grace_seconds: float = 2.0) -> bool:
    """
    SIGTERM the group, then SIGKILL whatever is left after ``grace_seconds``.

    Output pipes are drained either way so the child never blocks on a full
    pipe while it shuts down.

    Returns:
        True if the group had to be killed
    """
    kill_process_tree(proc.pid, signal.SIGTERM)
    try:
        proc.communicate(timeout=grace_seconds)
        return False
    except subprocess.TimeoutExpired:
        logger.warning(f"Process group {proc.pid} ignored SIGTERM for {grace_seconds:.1f}s, killing it")
        kill_process_tree(proc.pid, signal.SIGKILL)
        proc.communicate()
        return True
