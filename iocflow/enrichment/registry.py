"""Construction of the bundled adapters from pipeline configuration."""

import logging

from iocflow.config import PipelineConfig
from iocflow.enrichment.abuseipdb import AbuseIPDBAdapter
from iocflow.enrichment.base import IntelligenceAdapter, ReputationAdapter
from iocflow.enrichment.otx import OTXAdapter
from iocflow.enrichment.virustotal import VirusTotalAdapter
from iocflow.rate_limiter import make_limiter

logger = logging.getLogger("iocflow.registry")

# Registry of bundled adapters
REPUTATION_REGISTRY: dict[str, type[ReputationAdapter]] = {
    "virustotal": VirusTotalAdapter,
    "abuseipdb": AbuseIPDBAdapter,
}

INTELLIGENCE_REGISTRY: dict[str, type[IntelligenceAdapter]] = {
    "otx": OTXAdapter,
}

_KEY_FIELDS = {"virustotal": "vt_api_key", "abuseipdb": "abuseipdb_api_key", "otx": "otx_api_key"}
_RATE_FIELDS = {"virustotal": "vt_rate_limit", "abuseipdb": "abuseipdb_rate_limit", "otx": "otx_rate_limit"}


def _get_api_key(source: str, config: PipelineConfig) -> str:
    """Retrieve the API key for the given source from config."""
    return getattr(config, _KEY_FIELDS[source], "") or ""


def _wanted(source: str, config: PipelineConfig) -> bool:
    enabled = config.enrichment.enabled_sources
    return not enabled or source in enabled


def build_adapters(
    config: PipelineConfig,
) -> tuple[list[ReputationAdapter], list[IntelligenceAdapter]]:
    """
    Instantiate every bundled adapter that has credentials configured.

    Args:
        config: Pipeline configuration

    Returns:
        Tuple of (reputation adapters, intelligence adapters)
    """
    max_wait = config.enrichment.per_source_timeout_ms / 1000.0
    reputation: list[ReputationAdapter] = []
    intelligence: list[IntelligenceAdapter] = []

    for source, adapter_class in REPUTATION_REGISTRY.items():
        api_key = _get_api_key(source, config)
        if not api_key:
            logger.debug(f"No API key for {source}, skipping")
            continue
        limiter = make_limiter(source, getattr(config, _RATE_FIELDS[source]))
        reputation.append(adapter_class(api_key, limiter, max_wait=max_wait))

    for source, adapter_class in INTELLIGENCE_REGISTRY.items():
        api_key = _get_api_key(source, config)
        if not api_key or not _wanted(source, config):
            logger.debug(f"Intelligence source {source} not enabled, skipping")
            continue
        limiter = make_limiter(source, getattr(config, _RATE_FIELDS[source]))
        intelligence.append(adapter_class(api_key, limiter, max_wait=max_wait))

    logger.info(
        f"Adapters: reputation={[a.source_id for a in reputation]} "
        f"intelligence={[a.source_id for a in intelligence]}"
    )
    return reputation, intelligence
