"""
Relevance decay: scores live items and archives the ones that have gone stale.
"""

import threading
from datetime import date
from typing import Any, Dict, Optional

from ..models.core import ARCHIVED, DecayReport, ItemType, KnowledgeItem
from ..utils.config import config
from ..utils.exceptions import NotFoundError
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient
from ..utils.timestamp_utils import age_in_days, utc_today

logger = get_logger(__name__)

# Only these (type, status) pairs are swept; archived items never re-enter
LIVE_STATES = (
    (ItemType.ADR, 'active'),
    (ItemType.FAILURE, 'resolved'),
)


def calculate_decay_score(item: KnowledgeItem, today: Optional[date] = None) -> int:
    """Heuristic relevance score for one item.

    Starts at 100, loses 50 past a year of age (25 past half a year), drops to 0 when
    superseded, and gains 20 for more than 10 recent accesses and 15 for more than 5
    references. Items with no date take no age penalty.
    """
    score = 100

    if item.date is not None:
        age = age_in_days(item.date, today)
        if age > 365:
            score -= 50
        elif age > 180:
            score -= 25

    if item.status == 'superseded':
        score = 0

    if item.access_count_30d > 10:
        score += 20
    if item.reference_count > 5:
        score += 15

    return score


class DecayScorer:
    """Periodic sweep that archives live items scoring below the archive threshold."""

    def __init__(self, store: Optional[OpenSearchClient] = None, archive_threshold: Optional[int] = None):
        self.store = store if store is not None else OpenSearchClient(config.opensearch)
        self.archive_threshold = config.decay.archive_threshold if archive_threshold is None else archive_threshold

    def _evaluate(self, item: KnowledgeItem, today: date) -> bool:
        score = calculate_decay_score(item, today)
        logger.debug(f'Decay score for {item.id}: {score}')
        if score >= self.archive_threshold:
            return False

        if not self.store.update_document('item', item.id, {'status': ARCHIVED}):
            raise NotFoundError(f'{item.id} disappeared before it could be archived')
        logger.info(f'Archived {item.type.value} {item.id} (decay score {score})')
        return True

    def _evaluate_document(self, doc: Dict[str, Any], today: date, report: DecayReport):
        item_id = doc.get('id', '<unknown>')
        try:
            item = KnowledgeItem.from_document(doc)
            report.evaluated += 1
            if self._evaluate(item, today):
                report.archived.append(item.id)
        except Exception as e:
            logger.error(f'Decay evaluation failed for {item_id}: {e}')
            report.failed[item_id] = str(e)

    def run(self, today: Optional[date] = None) -> DecayReport:
        """
        Evaluate every live item once.

        A failure on one item (or on loading one item type) is recorded in the report and the
        sweep moves on to the rest.

        Args:
            today: Reference date for age computation (UTC today by default)

        Returns:
            DecayReport with the evaluated count, archived ids and per-item failures
        """
        today = today or utc_today()
        report = DecayReport()
        logger.info(f'Starting decay sweep for {today.isoformat()}')

        for item_type, status in LIVE_STATES:
            documents = self.store.scan_documents('item', filters={'type': item_type.value, 'status': status})
            try:
                for doc in documents:
                    self._evaluate_document(doc, today, report)
            except Exception as e:
                logger.error(f'Decay sweep could not load {status} {item_type.value} items: {e}')
                report.failed[f'{item_type.value}:{status}'] = str(e)

        logger.info(f'Decay sweep finished: {report.evaluated} evaluated, {len(report.archived)} archived, '
                    f'{len(report.failed)} failed')
        return report


class DecayScheduler:
    """Runs a DecayScorer sweep on a fixed interval in a daemon thread."""

    def __init__(self, scorer: DecayScorer, interval_hours: Optional[float] = None):
        self.scorer = scorer
        hours = config.decay.interval_hours if interval_hours is None else interval_hours
        self.interval_seconds = float(hours) * 3600
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self):
        while not self._stop_event.is_set():
            try:
                self.scorer.run()
            except Exception as e:
                logger.error(f'Scheduled decay sweep failed: {e}')
            self._stop_event.wait(self.interval_seconds)

    def start(self):
        if self.running:
            logger.warning('Decay scheduler already running')
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name='decay-scheduler', daemon=True)
        self._thread.start()
        logger.info(f'Decay scheduler started (every {self.interval_seconds / 3600:g} hours)')

    def stop(self, timeout: Optional[float] = None):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info('Decay scheduler stopped')
