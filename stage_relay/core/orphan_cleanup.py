"""Cleanup of capture processes orphaned by a previous relay run.

A relay that crashed or was killed without shutdown leaves its ffmpeg
children running; they keep a bridge device or NDI receiver busy and the
next run cannot capture from it. Capture command lines carry a marker so
they can be told apart from unrelated ffmpeg processes.
"""

import os
from typing import List

import psutil

from stage_relay.core.capture.commands import RELAY_PROCESS_MARKER
from stage_relay.core.logging_utils import get_module_logger

logger = get_module_logger("OrphanCleanup")


def find_orphaned_capture_processes() -> List[psutil.Process]:
    """Find relay capture processes whose parent relay has died.

    An orphaned process is one whose parent is gone (or was re-parented to
    init) and whose command line carries the relay marker.

    Returns:
        List of psutil.Process objects for orphaned capture processes
    """
    orphaned = []
    current_pid = os.getpid()

    for proc in psutil.process_iter(['pid', 'name', 'cmdline', 'ppid']):
        try:
            if proc.pid == current_pid:
                continue

            cmdline = proc.info.get('cmdline') or []
            cmdline_str = ' '.join(cmdline)

            if RELAY_PROCESS_MARKER not in cmdline_str:
                continue

            try:
                parent = proc.parent()
                if parent is None or parent.pid == 1:
                    orphaned.append(proc)
                    logger.debug(
                        "Found orphaned capture process: pid=%d, cmd=%s",
                        proc.pid, cmdline_str[:80]
                    )
            except psutil.NoSuchProcess:
                orphaned.append(proc)

        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue

    return orphaned


def cleanup_orphaned_processes(timeout: float = 3.0) -> int:
    """Terminate orphaned capture processes, killing any that linger.

    Args:
        timeout: Seconds to wait after SIGTERM before force-killing

    Returns:
        Number of processes signalled
    """
    orphaned = find_orphaned_capture_processes()
    if not orphaned:
        return 0

    signalled = 0
    logger.info("Found %d orphaned capture process(es)", len(orphaned))

    for proc in orphaned:
        try:
            logger.warning("Terminating orphaned capture process: pid=%d", proc.pid)
            proc.terminate()
            signalled += 1
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue

    gone, alive = psutil.wait_procs(orphaned, timeout=timeout)
    if gone:
        logger.debug("Terminated %d process(es)", len(gone))

    for proc in alive:
        try:
            logger.warning("Force killing unresponsive capture process: pid=%d", proc.pid)
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    if alive:
        psutil.wait_procs(alive, timeout=1.0)

    return signalled
