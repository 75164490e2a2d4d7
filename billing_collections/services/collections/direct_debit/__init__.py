from billing_collections.config import settings
from billing_collections.services.collections.direct_debit.adapter import (
    DirectDebitAdapter,
    map_bank_result_code,
)
from billing_collections.services.collections.direct_debit.debug_csv import (
    DebugCsvAdapter,
    build_debug_response_csv,
)
from billing_collections.services.collections.direct_debit.galicia_pd_v1 import (
    GaliciaPdV1Adapter,
)


def get_adapter(key: str | None = None) -> DirectDebitAdapter:
    normalized = (key or settings.billing_pd_adapter).strip().lower()
    if normalized == DebugCsvAdapter.name:
        return DebugCsvAdapter()
    if normalized == GaliciaPdV1Adapter.name:
        return GaliciaPdV1Adapter()
    raise ValueError(f"Unknown direct-debit adapter: {normalized}")


__all__ = [
    "DebugCsvAdapter",
    "DirectDebitAdapter",
    "GaliciaPdV1Adapter",
    "build_debug_response_csv",
    "get_adapter",
    "map_bank_result_code",
]
