"""Utilities for handling KeyboardInterrupt and child process cleanup.

This module provides utilities to ensure KeyboardInterrupt is properly
propagated to the main thread when caught in exception handlers, and to
tear down compiler and build-command process trees when a build is
cancelled.
"""

import _thread
import logging

import psutil


def handle_keyboard_interrupt_properly(ke: KeyboardInterrupt) -> None:
    """Handle KeyboardInterrupt by propagating it to the main thread.

    Usage:
        try:
            # Some code that might be interrupted
            pass
        except KeyboardInterrupt as ke:
            handle_keyboard_interrupt_properly(ke)

    Args:
        ke: The KeyboardInterrupt exception to handle

    Raises:
        KeyboardInterrupt: Always re-raises the exception after handling
    """
    _thread.interrupt_main()
    raise ke


def terminate_process_tree(pid: int, timeout: float = 3.0) -> int:
    """Terminate a process and all of its descendants.

    Children are signalled before the parent. Processes still alive after
    ``timeout`` seconds are killed.

    Returns:
        Number of processes signalled
    """
    try:
        root = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return 0

    try:
        children = root.children(recursive=True)
    except psutil.Error:
        children = []

    processes = list(reversed(children)) + [root]
    signalled = []
    for proc in processes:
        try:
            proc.terminate()
            signalled.append(proc)
            logging.debug(f"Terminated process {proc.pid}")
        except psutil.NoSuchProcess:
            pass  # Already dead
        except psutil.Error as e:
            logging.warning(f"Failed to terminate process {proc.pid}: {e}")

    _gone, alive = psutil.wait_procs(signalled, timeout=timeout)

    # Force kill any stragglers
    for proc in alive:
        try:
            proc.kill()
            logging.warning(f"Force killed stubborn process {proc.pid}")
        except psutil.NoSuchProcess:
            pass
        except psutil.Error as e:
            logging.warning(f"Failed to force kill process {proc.pid}: {e}")

    return len(signalled)
