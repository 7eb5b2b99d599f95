"""
Default provider and model catalog, with an idempotent seeding helper.

Usage:

    from agentu.catalog import seed_catalog
    await seed_catalog(get_store_backend())
"""

from collections.abc import Iterable, Mapping
from decimal import Decimal

from .core.logging import get_logger
from .core.store_backend import StoreBackend
from .models.enums import ServiceType
from .models.records import ModelRecord, ProviderRecord

logger = get_logger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"

PROVIDER_DEFAULTS: Iterable[Mapping[str, object]] = (
    # Users bring their own API keys
    {"code": "openai", "name": "OpenAI", "base_url": OPENAI_BASE_URL, "service_type": ServiceType.USER_PROVIDED, "sort_order": 1},
    {"code": "anthropic", "name": "Anthropic", "base_url": ANTHROPIC_BASE_URL, "service_type": ServiceType.USER_PROVIDED, "sort_order": 2},
    {
        "code": "google",
        "name": "Google AI",
        "base_url": "https://generativelanguage.googleapis.com/v1beta",
        "service_type": ServiceType.USER_PROVIDED,
        "sort_order": 3,
    },
    {
        "code": "zhipu",
        "name": "Zhipu AI",
        "base_url": "https://open.bigmodel.cn/api/paas/v4",
        "service_type": ServiceType.USER_PROVIDED,
        "sort_order": 4,
    },
    # Platform keys with a monthly free allowance per user
    {
        "code": "openai-official",
        "name": "OpenAI (official free)",
        "base_url": OPENAI_BASE_URL,
        "service_type": ServiceType.OFFICIAL_FREE,
        "free_quota_per_user_monthly": 50_000,
        "is_system_default": True,
        "sort_order": 10,
    },
    {
        "code": "anthropic-official",
        "name": "Claude (official free)",
        "base_url": ANTHROPIC_BASE_URL,
        "service_type": ServiceType.OFFICIAL_FREE,
        "free_quota_per_user_monthly": 30_000,
        "sort_order": 11,
    },
    # Platform keys, billed to the user
    {
        "code": "openai-premium",
        "name": "OpenAI (premium)",
        "base_url": OPENAI_BASE_URL,
        "service_type": ServiceType.OFFICIAL_PAID,
        "sort_order": 20,
    },
)

# (provider code, model code, display name, context window, max tokens, input $/1M, output $/1M, recommended)
MODEL_DEFAULTS: Iterable[tuple] = (
    ("openai", "gpt-4", "GPT-4", 8192, 4096, "30.0", "60.0", True),
    ("openai", "gpt-3.5-turbo", "GPT-3.5 Turbo", 16385, 4096, "1.5", "2.0", True),
    ("anthropic", "claude-3-sonnet-20240229", "Claude 3 Sonnet", 200_000, 4096, "3.0", "15.0", True),
    ("anthropic", "claude-3-haiku-20240307", "Claude 3 Haiku", 200_000, 4096, "0.25", "1.25", False),
    ("google", "gemini-pro", "Gemini Pro", 32768, 8192, "0.5", "1.5", True),
    ("zhipu", "glm-4", "GLM-4", 32768, 4096, "1.0", "2.0", True),
    ("openai-official", "gpt-3.5-turbo", "GPT-3.5 Turbo (free)", 16385, 4096, "0", "0", True),
    ("anthropic-official", "claude-3-haiku-20240307", "Claude 3 Haiku (free)", 200_000, 4096, "0", "0", True),
    ("openai-premium", "gpt-4", "GPT-4 (premium)", 8192, 4096, "25.0", "50.0", True),
    ("openai-premium", "gpt-3.5-turbo", "GPT-3.5 Turbo (premium)", 16385, 4096, "1.2", "1.6", True),
)


async def seed_catalog(
    store: StoreBackend,
    *,
    providers: Iterable[Mapping[str, object]] | None = None,
    models: Iterable[tuple] | None = None,
) -> dict[str, ProviderRecord]:
    """Insert catalog entries that are missing, matched by provider code and model code.

    Existing rows are left untouched. Returns the providers keyed by code.
    """
    by_code: dict[str, ProviderRecord] = {}
    created_providers = 0
    for row in providers or PROVIDER_DEFAULTS:
        code = str(row["code"])
        existing = await store.find_provider_by_code(code)
        if existing is None:
            existing = await store.add_provider(ProviderRecord(**row))
            created_providers += 1
        by_code[code] = existing

    created_models = 0
    for sort_order, (provider_code, model_code, display_name, context_window, max_tokens, price_in, price_out, recommended) in enumerate(
        models or MODEL_DEFAULTS, start=1
    ):
        provider = by_code.get(provider_code) or await store.find_provider_by_code(provider_code)
        if provider is None:
            logger.warning("Skipping model for unknown provider", extra={"provider_code": provider_code})
            continue
        if await store.find_model(provider.id, model_code) is not None:
            continue
        await store.add_model(
            ModelRecord(
                provider_id=provider.id,
                model_code=model_code,
                display_name=display_name,
                context_window=context_window,
                max_tokens=max_tokens,
                input_price_per_1m_tokens=Decimal(price_in),
                output_price_per_1m_tokens=Decimal(price_out),
                supports_function_calling=True,
                is_recommended=recommended,
                sort_order=sort_order,
            )
        )
        created_models += 1

    logger.info("Catalog seeded", extra={"providers_created": created_providers, "models_created": created_models})
    return by_code
