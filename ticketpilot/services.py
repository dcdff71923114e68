"""Builds the shared collaborators from configuration.

The webhook server and the workers each call `build_services` once at start
up and pass the pieces explicitly to whatever needs them.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.engine import Engine

from .config.models import TicketPilotConfig
from .dispatcher.dispatcher import Dispatcher, InFlightMarkers
from .integrations.linear import LinearClient
from .plans.store import PlanStore
from .state.reconciler import StateReconciler
from .state.workflow import SynonymTable
from .storage.db import open_engine
from .storage.kv import TTLStore
from .storage.queue import JobQueue, RateLimiter
from .webhooks.classifier import EventClassifier
from .webhooks.repos import RepoResolver

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Process-wide collaborators."""

    config: TicketPilotConfig
    engine: Engine
    kv: TTLStore
    plan_store: PlanStore
    queue: JobQueue
    limiter: RateLimiter
    markers: InFlightMarkers
    dispatcher: Dispatcher
    tracker: LinearClient
    synonyms: SynonymTable
    reconciler: StateReconciler
    repo_resolver: RepoResolver
    classifier: EventClassifier


def build_services(config: TicketPilotConfig, tracker: LinearClient | None = None) -> Services:
    """Open storage and wire every shared component.

    Args:
        config: Loaded configuration
        tracker: Tracker client override (tests pass one with a mock transport)
    """
    engine = open_engine(config.storage.db_path)
    kv = TTLStore(engine)
    plan_store = PlanStore(
        kv, ttl_days=config.plans.ttl_days, key_prefix=config.plans.key_prefix
    )
    queue = JobQueue(
        engine,
        config.queue.name,
        default_attempts=config.queue.attempts,
        default_backoff_sec=config.queue.backoff_sec,
    )
    limiter = RateLimiter(
        engine,
        bucket=config.queue.name,
        max_tokens=config.queue.limiter_max,
        window_sec=config.queue.limiter_window_sec,
    )
    tracker = tracker or LinearClient(
        config.tracker.api_key,
        api_url=config.tracker.api_url,
        timeout_sec=config.tracker.timeout_sec,
    )
    if not tracker.enabled:
        logger.warning("LINEAR_API_KEY not set; tracker comments and state changes are disabled")

    markers = InFlightMarkers(
        kv,
        ttl_sec=config.queue.inflight_ttl_sec,
        settle_sec=config.queue.inflight_settle_sec,
    )
    synonyms = SynonymTable(config.workflow.labels)
    reconciler = StateReconciler(
        tracker,
        synonyms,
        grace_period_sec=config.workflow.grace_period_sec,
        confirm_polls=config.workflow.confirm_polls,
        confirm_poll_interval_sec=config.workflow.confirm_poll_interval_sec,
    )
    repo_resolver = RepoResolver(
        kv,
        mapping_file=config.repos.mapping_file,
        team_repos=config.repos.team_repos,
        default_repo_url=config.repos.default_repo_url,
        cache_ttl_sec=config.repos.cache_ttl_sec,
    )
    classifier = EventClassifier(
        plan_store,
        repo_resolver,
        tracker,
        synonyms=synonyms,
        trigger_label=config.tracker.trigger_label,
        enable_plan_review=config.workflow.enable_plan_review,
        branch_prefix=config.repos.branch_prefix,
        approval_phrases=config.workflow.approval_phrases,
        bot_user_ids=config.tracker.bot_user_ids,
        bot_names=config.tracker.bot_names,
        bot_signatures=config.tracker.bot_signatures,
        markers=markers,
    )
    return Services(
        config=config,
        engine=engine,
        kv=kv,
        plan_store=plan_store,
        queue=queue,
        limiter=limiter,
        markers=markers,
        dispatcher=Dispatcher(queue, markers),
        tracker=tracker,
        synonyms=synonyms,
        reconciler=reconciler,
        repo_resolver=repo_resolver,
        classifier=classifier,
    )
