"""Parallel diagnostic engine.

Runs the probe set on a bounded thread pool and folds every outcome into a
fresh HealthReport. Each probe is bounded individually from the moment a
worker picks it up: an overrun, an exception or a malformed return value
becomes an inconclusive result worth one issue. The engine holds no state
between runs, so concurrent or repeated calls are safe.

A timed out probe is abandoned, not killed: the pool is shut down without
waiting, so the report is returned on time, but ``concurrent.futures`` still
joins its worker threads at interpreter exit. A probe blocked in the kernel
(for example ``open()`` on a dead disk) therefore delays process exit until
the read returns. External tools are not affected; they run under
``run_command`` timeouts.
"""

from __future__ import annotations

import dataclasses
import math
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Mapping, Optional, Union

from grub_recovery.config.settings import DEFAULT_PARALLEL_JOBS, DEFAULT_PROBE_TIMEOUT
from grub_recovery.domain.models import HealthReport, ProbeResult, SystemProfile
from grub_recovery.exceptions import ProbeInconclusive
from grub_recovery.logging import EventLogger, LoggerFactory

from .probes import PROBES, Probe


POLL_INTERVAL = 0.05


def _settle(check_id: str, future: Future) -> ProbeResult:
    """Turn a finished future into that probe's result."""
    try:
        result = future.result()
    except ProbeInconclusive as error:
        return ProbeResult.failed_to_complete(check_id, error.reason)
    except Exception as error:
        return ProbeResult.failed_to_complete(check_id, f"{type(error).__name__}: {error}")
    if not isinstance(result, ProbeResult):
        return ProbeResult.failed_to_complete(
            check_id, f"probe returned {type(result).__name__}"
        )
    if result.check_id != check_id:
        result = dataclasses.replace(result, check_id=check_id)
    return result


def run_diagnostics(
    profile: SystemProfile,
    *,
    root: Optional[Union[str, Path]] = None,
    probes: Optional[Mapping[str, Probe]] = None,
    max_workers: Optional[int] = None,
    probe_timeout: Optional[float] = None,
    job_id: Optional[str] = None,
) -> HealthReport:
    """Run every probe concurrently and aggregate a HealthReport.

    Args:
        profile: Resolved system profile, read-only
        root: Filesystem root to inspect (defaults to the profile's root)
        probes: check id -> probe callable (defaults to the full probe set)
        max_workers: Pool size bound
        probe_timeout: Per-probe limit in seconds, measured from probe start
        job_id: Attach log lines to an existing job

    Returns:
        HealthReport with exactly one entry per probe
    """
    log = LoggerFactory.for_diagnostics(job_id)
    root = Path(root if root is not None else profile.host_root)
    probes = dict(PROBES if probes is None else probes)
    max_workers = max(1, max_workers or DEFAULT_PARALLEL_JOBS)
    probe_timeout = probe_timeout or DEFAULT_PROBE_TIMEOUT

    started: dict[str, float] = {}
    started_lock = threading.Lock()

    def _run(check_id: str, probe: Probe) -> ProbeResult:
        with started_lock:
            started[check_id] = time.monotonic()
        return probe(profile, root)

    log.info(f"Running {len(probes)} health probes (workers: {max_workers})")
    results: dict[str, ProbeResult] = {}
    # Probes still queued behind stuck workers are abandoned at this deadline
    waves = math.ceil(len(probes) / max_workers) + 1
    deadline = time.monotonic() + probe_timeout * waves

    executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="probe")
    try:
        pending = {
            executor.submit(_run, check_id, probe): check_id
            for check_id, probe in probes.items()
        }
        while pending:
            done, _ = wait(list(pending), timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
            for future in done:
                check_id = pending.pop(future)
                results[check_id] = _settle(check_id, future)
                log.debug(
                    f"Probe {check_id}: {results[check_id].issues} issue(s)",
                    event_type="probe_progress",
                )

            now = time.monotonic()
            for future, check_id in list(pending.items()):
                with started_lock:
                    began = started.get(check_id)
                if began is not None and now - began > probe_timeout:
                    reason = f"timed out after {probe_timeout}s"
                elif began is None and now > deadline:
                    reason = "never started before the diagnostic deadline"
                else:
                    continue
                future.cancel()
                pending.pop(future)
                log.warning(f"Probe {check_id} {reason}")
                results[check_id] = ProbeResult.failed_to_complete(check_id, reason)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    report = HealthReport.from_results(results.values())
    for entry in report.entries:
        if entry.issues:
            log.warning(f"{entry.check_id}: {entry.issues} issue(s) {entry.detail}".rstrip())
    EventLogger.log_health_report(log, report.score, report.total_issues)
    return report
