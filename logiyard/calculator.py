# logiyard/calculator.py

import logging
from datetime import date
from typing import List, Optional

from db.setup import session_scope
from logiyard.algorithms import compute_quote, non_negative
from logiyard.config import Settings, settings as default_settings
from logiyard.directory import require_warehouse
from logiyard.models import RateQuote
from logiyard.rates import find_effective_rates
from logiyard.zones import find_zones

logger = logging.getLogger(__name__)


class RateCalculator:
    """
    Produces shipping quotes for a weight/value request.

    1. Resolves the destination to candidate zones.
    2. Loads every active rate of the warehouse in those zones that is in
       effect today and admits the weight.
    3. Prices each one; the result lists all of them, cheapest base rate
       first within each service type.
    """

    def __init__(self, session_factory, settings: Optional[Settings] = None):
        self.DBSession = session_factory
        self.settings = settings or default_settings

    def calculate(self, tenant_id: str, warehouse_id: int, destination_country: str,
                  weight_kg, declared_value=0, declared_currency: Optional[str] = None,
                  service_type: Optional[str] = None,
                  as_of: Optional[date] = None) -> List[RateQuote]:
        weight = non_negative(weight_kg, 'weight_kg')
        value = non_negative(declared_value, 'declared_value')
        today = as_of or date.today()
        currency = (declared_currency or self.settings.default_currency).upper()

        with session_scope(self.DBSession) as session:
            require_warehouse(session, warehouse_id, tenant_id)

            zones = find_zones(session, destination_country, tenant_id)
            if not zones:
                logger.info("No zone covers %s for tenant %s", destination_country, tenant_id)
                return []
            zone_names = {zone.id: zone.name for zone in zones}

            rates = find_effective_rates(
                session, tenant_id, warehouse_id, list(zone_names), today,
                service_type=service_type.lower() if service_type else None,
                weight_kg=weight,
            )

        logger.debug("Pricing %d rates for %s kg to %s", len(rates), weight, destination_country)
        quotes = []
        for rate in rates:
            breakdown = compute_quote(
                weight_kg=weight,
                base_rate=rate.base_rate,
                per_kg_rate=rate.per_kg_rate,
                min_charge=rate.min_charge,
                declared_value=value,
                insurance_rate=self.settings.insurance_rate,
                insurance_minimum=self.settings.insurance_minimum,
                handling_fee=self.settings.handling_fee,
                quantum=self.settings.money_quantum,
            )
            quotes.append(RateQuote(rate, zone_names[rate.zone_id], weight, breakdown,
                                    insurance_currency=currency))
        return quotes
