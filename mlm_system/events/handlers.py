# mlm_system/events/handlers.py
"""
CRM intake handlers.
Turn sale, points and promotion notifications into qualifying events.
"""
import logging
from decimal import Decimal
from typing import Dict, Any

from core.db import get_session
from mlm_system.config.ranks import Rank
from mlm_system.errors import DuplicateEventError
from mlm_system.events.qualifying import SaleEvent, PositionChangeEvent
from mlm_system.services.event_ingestion_service import EventIngestionService
from mlm_system.utils.calendar_rules import as_business_date
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


async def handle_sale_recorded(data: Dict[str, Any]):
    """
    Handle SALE_RECORDED event.

    Args:
        data: saleId, sellerId, productType, acquisitionDate and optionally
              installationDate, baseAmount, sellerMonthlyPoints
    """
    sale_id = data.get("saleId")
    seller_id = data.get("sellerId")

    if not sale_id or not seller_id:
        logger.error(f"SALE_RECORDED event missing saleId/sellerId: {data}")
        return

    session = get_session()

    try:
        base_amount = data.get("baseAmount")
        points = data.get("sellerMonthlyPoints")

        event = SaleEvent(
            saleId=str(sale_id),
            sellerId=int(seller_id),
            productType=data["productType"],
            acquisitionDate=as_business_date(data["acquisitionDate"]),
            installationDate=as_business_date(data.get("installationDate")),
            baseAmount=Decimal(str(base_amount)) if base_amount is not None else None,
            sellerMonthlyPoints=int(points) if points is not None else None,
        )

        await EventIngestionService(session).ingest(event)
        logger.info(f"✓ Sale {sale_id} queued for commission computation")

    except DuplicateEventError:
        logger.info(f"Sale {sale_id} already queued")

    except Exception as e:
        logger.error(f"Error ingesting sale {sale_id}: {e}", exc_info=True)
        session.rollback()

    finally:
        session.close()


async def handle_points_updated(data: Dict[str, Any]):
    """
    Handle POINTS_UPDATED event (CAE threshold detection).

    Args:
        data: distributorId, monthlyPoints, optional occurredAt
    """
    distributor_id = data.get("distributorId")

    if not distributor_id:
        logger.error("POINTS_UPDATED event missing distributorId")
        return

    session = get_session()

    try:
        record = await EventIngestionService(session).ingestPointsUpdate(
            int(distributor_id),
            int(data.get("monthlyPoints", 0)),
            as_business_date(data.get("occurredAt"))
        )
        if record:
            logger.info(f"✓ CAE threshold event {record.eventKey} queued")

    except Exception as e:
        logger.error(f"Error handling points update for {distributor_id}: {e}", exc_info=True)
        session.rollback()

    finally:
        session.close()


async def handle_rank_promoted(data: Dict[str, Any]):
    """
    Handle RANK_PROMOTED event.

    Args:
        data: distributorId, newRank, effectiveDate
    """
    distributor_id = data.get("distributorId")

    if not distributor_id or not data.get("newRank"):
        logger.error(f"RANK_PROMOTED event missing distributorId/newRank: {data}")
        return

    session = get_session()

    try:
        event = PositionChangeEvent(
            distributorId=int(distributor_id),
            newRank=Rank.parse(data["newRank"]),
            effectiveDate=as_business_date(data.get("effectiveDate")) or timeMachine.today,
        )

        await EventIngestionService(session).ingest(event)
        logger.info(f"✓ Promotion {event.eventKey} recorded")

    except DuplicateEventError:
        logger.info(f"Promotion of {distributor_id} to {data['newRank']} already recorded")

    except Exception as e:
        logger.error(f"Error handling promotion of {distributor_id}: {e}", exc_info=True)
        session.rollback()

    finally:
        session.close()
