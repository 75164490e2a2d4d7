from billing_collections.tasks.collections import (
    run_anchor,
    run_fallback_create,
    run_fallback_sync,
    run_fiscal_retry,
    run_presentment,
)

__all__ = [
    "run_anchor",
    "run_presentment",
    "run_fallback_create",
    "run_fallback_sync",
    "run_fiscal_retry",
]
