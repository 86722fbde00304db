import datetime
import logging

from firmsync.model import SyncMetadata

logger = logging.getLogger(__name__)

__all__ = ['compute_fetch_window']


def compute_fetch_window(metadata: SyncMetadata, now: datetime.datetime,
                         default_window: datetime.timedelta,
                         cap: datetime.timedelta,
                         buffer: datetime.timedelta) -> tuple[datetime.datetime, datetime.datetime]:
    """Window of provider history the next run should fetch.

    Without a watermark the window is the default length ending now. With one,
    the window starts a safety buffer before the last processed end and is at
    most cap long; whatever lies beyond the cap is left for the next run.

    Args:
        metadata: Last successful window, or None
        now: Current aware UTC time
        default_window: Window length used before the first success
        cap: Maximum window length
        buffer: Overlap with the previous window

    Returns
        (start, end) with start < end <= now
    """
    if metadata is None:
        return now - default_window, now

    start = metadata.last_successful_to - buffer
    end = min(now, start + cap)
    if end <= start:
        logger.warning(f'Sync watermark {metadata.last_successful_to} is ahead of now ({now}), '
                       f'using default window')
        return now - default_window, now

    if end < now:
        logger.info(f'Sync is behind by {now - end}, fetching {start} - {end} this run')
    return start, end
