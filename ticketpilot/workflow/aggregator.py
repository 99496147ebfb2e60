"""Verdict computation for implementation results."""

from __future__ import annotations

from ticketpilot.workflow.models import ImplementationResult, ImplementationStatus, Verdict

_STATUS_BY_VERDICT = {
    Verdict.SUCCESS: ImplementationStatus.COMPLETED,
    Verdict.BUILD_FAILURE: ImplementationStatus.BUILD_FAILED,
    Verdict.TEST_FAILURE: ImplementationStatus.TEST_FAILED,
    Verdict.EXPLICIT_FAILURE: ImplementationStatus.FAILED,
}


def aggregate(result: ImplementationResult) -> Verdict:
    """Compute the overall verdict of an implementation.

    Rules are evaluated in order and the first match wins. A failed build
    outranks any test data, so stale test counts from a previous attempt
    cannot mask it.

    Args:
        result: Implementation result to judge

    Returns:
        ExplicitFailure if any error was recorded, BuildFailure if the build
        ran and failed, TestFailure if tests ran with failures, else Success
    """
    if result.errors:
        return Verdict.EXPLICIT_FAILURE
    if result.build_result is not None and not result.build_result.is_success:
        return Verdict.BUILD_FAILURE
    if result.test_result is not None and result.test_result.failed_tests > 0:
        return Verdict.TEST_FAILURE
    return Verdict.SUCCESS


def status_for(verdict: Verdict) -> ImplementationStatus:
    """Terminal implementation status matching a verdict."""
    return _STATUS_BY_VERDICT[verdict]
