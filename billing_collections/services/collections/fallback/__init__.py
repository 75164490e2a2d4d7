from billing_collections.services.collections.fallback.providers import (
    CigQrProvider,
    CreatePaymentIntentInput,
    FallbackProviderAdapter,
    FallbackProviderError,
    IntentSnapshot,
    MercadoPagoStubProvider,
    get_fallback_provider,
    is_provider_enabled,
)

__all__ = [
    "CigQrProvider",
    "CreatePaymentIntentInput",
    "FallbackProviderAdapter",
    "FallbackProviderError",
    "IntentSnapshot",
    "MercadoPagoStubProvider",
    "get_fallback_provider",
    "is_provider_enabled",
]
