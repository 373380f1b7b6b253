"""Time-slot overlap detection for reservations.

Ranges are half-open: a booking ending at 10:00 and one starting at 10:00
do not collide. Only approved reservations occupy a slot; any number of
pending requests may share one until an admin approves one of them.
"""
import logging

logger = logging.getLogger(__name__)

APPROVED = 'approved'


def ranges_overlap(a_start, a_end, b_start, b_end) -> bool:
    return a_start < b_end and b_start < a_end


def find_conflict(reservations, start, end, exclude_id=None):
    """Return the first approved reservation overlapping ``[start, end)``, or None."""
    for existing in reservations:
        if exclude_id is not None and existing.id == exclude_id:
            continue
        if existing.status != APPROVED:
            continue
        if ranges_overlap(start, end, existing.start_time, existing.end_time):
            return existing
    return None


def conflicts(store, resource_id, date, start, end, exclude_id=None) -> bool:
    existing = store.approved_on(resource_id, date, exclude_id=exclude_id)
    hit = find_conflict(existing, start, end, exclude_id=exclude_id)
    if hit is not None:
        logger.info('Slot %s %s-%s on resource %s collides with reservation %s',
                    date, start, end, resource_id, hit.id)
        return True
    return False
