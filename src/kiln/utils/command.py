# -*- coding: utf-8 -*-
#
# Copyright (C) 2024-2026 Kiln Developers
# Copyright (C) 2012-2013 Paul Tagliamonte <paultag@debian.org>
#
# SPDX-License-Identifier: LGPL-3.0+

import os
import time
import shlex
import signal
import threading
import subprocess
from dataclasses import dataclass

import kiln.typing as T


# Input may be a byte string, a unicode string, or a file-like object
def run_command(command, input=None, capture_output=True, cwd=None, env=None):
    if not isinstance(command, list):
        command = shlex.split(command)

    if not input:
        input = None
    elif isinstance(input, str):
        input = input.encode('utf-8')
    elif not isinstance(input, bytes):
        input = input.read()

    p_stdout = None
    p_stderr = None
    if capture_output:
        p_stdout = subprocess.PIPE
        p_stderr = subprocess.PIPE

    try:
        pipe = subprocess.Popen(
            command,
            shell=False,
            cwd=cwd,
            env=env,
            stdin=subprocess.PIPE,
            stdout=p_stdout,
            stderr=p_stderr,
        )
    except OSError as e:
        return (None, str(e), -1)

    (output, stderr) = pipe.communicate(input=input)
    if capture_output:
        (output, stderr) = (c.decode('utf-8', errors='ignore') for c in (output, stderr))
    return (output, stderr, pipe.returncode)


@dataclass
class StepResult:
    output: str
    returncode: T.Optional[int]
    timed_out: bool = False
    cancelled: bool = False


def _kill_group(proc: subprocess.Popen):
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def run_shell_step(
    script: str,
    *,
    cwd: T.PathUnion,
    env: T.Dict[str, str],
    timeout: T.Optional[float] = None,
    cancel_event: T.Optional[threading.Event] = None,
    poll_interval: float = 0.25,
) -> StepResult:
    '''
    Run a shell snippet in its own process group, collecting stdout and stderr
    combined.
    The whole process group is killed if :timeout expires or :cancel_event is set.
    '''

    proc = subprocess.Popen(
        ['/bin/sh', '-e', '-c', script],
        cwd=cwd,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        start_new_session=True,
    )

    deadline = time.monotonic() + timeout if timeout else None
    timed_out = False
    cancelled = False
    while True:
        try:
            output, _ = proc.communicate(timeout=poll_interval)
            break
        except subprocess.TimeoutExpired:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
            elif deadline is not None and time.monotonic() > deadline:
                timed_out = True
            else:
                continue
            _kill_group(proc)
            output, _ = proc.communicate()
            break

    return StepResult(
        output=output.decode('utf-8', errors='replace') if output else '',
        returncode=proc.returncode,
        timed_out=timed_out,
        cancelled=cancelled,
    )
