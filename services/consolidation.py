import copy
import logging

from services.records import DEMAND, TRANSFER_HISTORY, merge_key, safe_float


# Configure logging
logger = logging.getLogger(__name__)

HISTORY_SEPARATOR = "; "


def consolidate_records(records):
    """
    Merge records that share (variant, week, source location).

    The first record seen for a key is kept as the seed; later duplicates add
    their demand to it and have their Transfer History appended with ``"; "``.
    Total demand is unchanged and the record count never grows.

    :param records: Records of a single DFU.
    :type records: list[dict]
    :return: New list of merged records, in first-seen order.
    :rtype: list[dict]
    """
    merged = {}
    for record in records:
        key = merge_key(record)
        demand = safe_float(record.get(DEMAND))
        history = record.get(TRANSFER_HISTORY) or ""

        seed = merged.get(key)
        if seed is None:
            seed = copy.deepcopy(dict(record))
            seed[DEMAND] = demand
            merged[key] = seed
            continue

        seed[DEMAND] = safe_float(seed.get(DEMAND)) + demand
        if history:
            existing = seed.get(TRANSFER_HISTORY) or ""
            seed[TRANSFER_HISTORY] = f"{existing}{HISTORY_SEPARATOR}{history}" if existing else history

    if len(merged) != len(records):
        logger.debug("Consolidated %d records into %d", len(records), len(merged))
    return list(merged.values())
