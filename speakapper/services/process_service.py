"""External tool execution tied to a request's CancelToken."""

import logging
import subprocess
import time

logger = logging.getLogger(__name__)

POLL_SECONDS = 0.25


def run_cancellable(args, cancel_token, timeout, *, stage='', subprocess_module=subprocess, poll_seconds=POLL_SECONDS):
    """Run ``args`` and capture its text output, polling ``cancel_token``.

    The child is killed as soon as the token is cancelled or its deadline
    passes (``PipelineCancelled``), or once ``timeout`` seconds have elapsed
    (``subprocess.TimeoutExpired``).
    """
    process = subprocess_module.Popen(args, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    started = time.monotonic()
    while True:
        try:
            stdout, stderr = process.communicate(timeout=poll_seconds)
        except subprocess.TimeoutExpired:
            timed_out = timeout is not None and time.monotonic() - started >= timeout
            remaining = cancel_token.remaining()
            if not (timed_out or cancel_token.cancelled or (remaining is not None and remaining <= 0)):
                continue
            logger.warning('Killing %s (stage=%s, timed_out=%s)', args[0], stage, timed_out)
            process.kill()
            process.communicate()
            cancel_token.check(stage)
            raise subprocess.TimeoutExpired(args, timeout)
        return subprocess.CompletedProcess(args, process.returncode, stdout, stderr)
