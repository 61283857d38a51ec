# app.py
from typing import Optional

from flask import Flask, jsonify, request

from db.setup import BinLocation, session_scope
from logiyard.algorithms import parse_date
from logiyard.config import Settings, settings as default_settings
from logiyard.controller import YardMaster
from logiyard.errors import InvalidRangeError, LogiyardError, NotFoundError
from logiyard.log import configure_logging
from logiyard.models import as_text

# --- HELPER FUNCTIONS ---

def _rate_to_dict(rate):
    """Converts a database ShippingRate record to a JSON-friendly dict."""
    return {
        'id': rate.id,
        'warehouse_id': rate.warehouse_id,
        'zone_id': rate.zone_id,
        'service_type': rate.service_type,
        'base_rate': as_text(rate.base_rate),
        'per_kg_rate': as_text(rate.per_kg_rate),
        'min_charge': as_text(rate.min_charge),
        'max_weight_kg': as_text(rate.max_weight_kg),
        'currency_code': rate.currency_code,
        'is_active': rate.is_active,
        'effective_from': as_text(rate.effective_from),
        'effective_until': as_text(rate.effective_until),
    }

def _assignment_to_dict(assignment):
    return {
        'id': assignment.id,
        'package_id': assignment.package_id,
        'bin_id': assignment.bin_id,
        'assigned_at': as_text(assignment.assigned_at),
        'assigned_by': assignment.assigned_by,
        'assignment_reason': assignment.assignment_reason,
        'notes': assignment.notes,
    }

def _charge_to_dict(charge):
    return {
        'id': charge.id,
        'package_id': charge.package_id,
        'charge_from_date': as_text(charge.charge_from_date),
        'charge_to_date': as_text(charge.charge_to_date),
        'days_charged': charge.days_charged,
        'total_storage_fee': as_text(charge.total_storage_fee),
        'currency': charge.currency,
        'is_invoiced': charge.is_invoiced,
        'invoice_id': charge.invoice_id,
    }

def _policy_to_dict(policy):
    return {
        'id': policy.id,
        'warehouse_id': policy.warehouse_id,
        'free_days': policy.free_days,
        'daily_rate': as_text(policy.daily_rate),
        'currency': policy.currency,
        'effective_from': as_text(policy.effective_from),
        'effective_until': as_text(policy.effective_until),
        'is_active': policy.is_active,
        'notes': policy.notes,
    }

def _tenant() -> str:
    tenant_id = request.headers.get('X-Tenant-Id', '').strip()
    if not tenant_id:
        raise InvalidRangeError("Missing X-Tenant-Id header")
    return tenant_id

def _body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidRangeError("Request body must be a JSON object")
    return data

def _require(data: dict, *fields):
    missing = [field for field in fields if data.get(field) in (None, '')]
    if missing:
        raise InvalidRangeError("Missing required fields", fields=",".join(missing))
    return [data[field] for field in fields]

def _query_flag(name: str) -> Optional[bool]:
    raw = request.args.get(name)
    if raw is None:
        return None
    return raw.strip().lower() in ('1', 'true', 'yes')

# --- APP FACTORY ---

def create_app(database_url: Optional[str] = None, settings: Optional[Settings] = None,
               yard: Optional[YardMaster] = None) -> Flask:
    settings = settings or default_settings
    configure_logging(settings.log_level)

    app = Flask(__name__)
    wm = yard or YardMaster(database_url, settings)
    app.extensions['yard'] = wm
    prefix = settings.api_prefix

    @app.errorhandler(LogiyardError)
    def handle_engine_error(error: LogiyardError):
        return jsonify(error.to_dict()), error.status

    # --- API ENDPOINTS ---

    @app.route(f'{prefix}/status', methods=['GET'])
    def get_status():
        """Returns the current state of the engine."""
        with session_scope(wm.DBSession) as session:
            bin_count = session.query(BinLocation).filter_by(is_active=True).count()
        return jsonify({
            "status": "Operational",
            "app_name": settings.app_name,
            "default_currency": settings.default_currency,
            "active_bins": bin_count,
        })

    @app.route(f'{prefix}/quotes', methods=['POST'])
    def create_quotes():
        """
        Prices a shipment against every applicable rate.
        Expected JSON: {"warehouse_id": 1, "destination_country": "JM", "weight_kg": "2.5",
                        "declared_value": "100", "service_type": "economy"}
        """
        data = _body()
        warehouse_id, country, weight = _require(data, 'warehouse_id', 'destination_country', 'weight_kg')
        quotes = wm.calculator.calculate(
            _tenant(), int(warehouse_id), country, weight,
            declared_value=data.get('declared_value', 0),
            declared_currency=data.get('declared_currency'),
            service_type=data.get('service_type'),
            as_of=parse_date(data['as_of'], 'as_of') if data.get('as_of') else None,
        )
        return jsonify({"status": "Success", "quotes": [q.to_dict() for q in quotes]})

    @app.route(f'{prefix}/rates', methods=['POST'])
    def create_rate():
        data = _body()
        fields = _require(data, 'warehouse_id', 'zone_id', 'service_type', 'base_rate',
                          'per_kg_rate', 'min_charge', 'effective_from')
        warehouse_id, zone_id, service_type, base_rate, per_kg_rate, min_charge, effective_from = fields
        rate = wm.rates.create_rate(
            _tenant(), int(warehouse_id), int(zone_id), service_type,
            base_rate, per_kg_rate, min_charge, effective_from,
            effective_until=data.get('effective_until'),
            max_weight_kg=data.get('max_weight_kg'),
            currency_code=data.get('currency_code'),
            is_active=data.get('is_active', True),
        )
        return jsonify({"status": "Success", "rate": _rate_to_dict(rate)}), 201

    @app.route(f'{prefix}/rates/<int:rate_id>', methods=['PATCH'])
    def update_rate(rate_id):
        rate = wm.rates.update_rate(rate_id, _tenant(), **_body())
        return jsonify({"status": "Success", "rate": _rate_to_dict(rate)})

    @app.route(f'{prefix}/rates/<int:rate_id>', methods=['DELETE'])
    def delete_rate(rate_id):
        if not wm.rates.delete_rate(rate_id, _tenant()):
            raise NotFoundError("Rate", rate_id)
        return jsonify({"status": "Success", "deleted": rate_id})

    @app.route(f'{prefix}/zones/resolve/<country_code>', methods=['GET'])
    def resolve_zones(country_code):
        zone_ids = wm.zones.resolve_zones(country_code, _tenant())
        return jsonify({"country_code": country_code.upper(), "zone_ids": zone_ids})

    @app.route(f'{prefix}/zones/<int:zone_id>', methods=['PATCH'])
    def update_zone(zone_id):
        """Expected JSON: {"name": "West Indies", "is_active": false}"""
        data = _body()
        zone = wm.zones.update_zone(zone_id, _tenant(), name=data.get('name'),
                                    description=data.get('description'), is_active=data.get('is_active'))
        return jsonify({"status": "Success",
                        "zone": {"id": zone.id, "name": zone.name, "is_active": zone.is_active}})

    @app.route(f'{prefix}/warehouses/<int:warehouse_id>/storage/policies', methods=['GET'])
    def storage_policies(warehouse_id):
        policies = wm.storage.list_policies(_tenant(), warehouse_id)
        return jsonify({"warehouse_id": warehouse_id, "policies": [_policy_to_dict(p) for p in policies]})

    @app.route(f'{prefix}/storage/policies/<int:policy_id>', methods=['PATCH'])
    def update_storage_policy(policy_id):
        policy = wm.storage.update_policy(policy_id, _tenant(), **_body())
        return jsonify({"status": "Success", "policy": _policy_to_dict(policy)})

    @app.route(f'{prefix}/bins/<int:bin_id>/assignments', methods=['POST'])
    def assign_package(bin_id):
        """
        Places a package into the bin.
        Expected JSON: {"package_id": 3, "reason": "Inbound", "actor": "clerk-7"}
        """
        data = _body()
        (package_id,) = _require(data, 'package_id')
        assignment = wm.bins.assign(
            int(package_id), bin_id,
            reason=data.get('reason'), actor=data.get('actor'), notes=data.get('notes'),
        )
        return jsonify({"status": "Success", "assignment": _assignment_to_dict(assignment)}), 201

    @app.route(f'{prefix}/packages/<int:package_id>/assignment', methods=['DELETE'])
    def remove_package(package_id):
        data = request.get_json(silent=True) or {}
        removed = wm.bins.remove(
            package_id=package_id,
            reason=data.get('reason'), actor=data.get('actor'), notes=data.get('notes'),
        )
        return jsonify({"status": "Success", "removed": removed})

    @app.route(f'{prefix}/warehouses/<int:warehouse_id>/bins/available', methods=['GET'])
    def available_bins(warehouse_id):
        if wm.directory.get_warehouse(warehouse_id, _tenant()) is None:
            raise NotFoundError("Warehouse", warehouse_id)
        bins = wm.bins.get_available_bins(
            warehouse_id,
            zone_name=request.args.get('zone_name'),
            min_capacity=request.args.get('min_capacity', type=int),
            weight_kg=request.args.get('weight_kg'),
            is_climate_controlled=_query_flag('is_climate_controlled'),
            is_secured=_query_flag('is_secured'),
        )
        return jsonify({"warehouse_id": warehouse_id, "bins": [b.to_dict() for b in bins]})

    @app.route(f'{prefix}/warehouses/<int:warehouse_id>/capacity', methods=['GET'])
    def warehouse_capacity(warehouse_id):
        if wm.directory.get_warehouse(warehouse_id, _tenant()) is None:
            raise NotFoundError("Warehouse", warehouse_id)
        report = wm.bins.get_warehouse_capacity(warehouse_id)
        if report is None:
            return jsonify({"warehouse_id": warehouse_id, "zones": []})
        return jsonify(report.to_dict())

    @app.route(f'{prefix}/storage/charges', methods=['POST'])
    def calculate_storage_charge():
        """
        Computes and records the storage fee for a package.
        Expected JSON: {"package_id": 1, "warehouse_id": 1,
                        "from_date": "2025-03-01", "to_date": "2025-03-11"}
        """
        data = _body()
        package_id, warehouse_id, from_date, to_date = _require(
            data, 'package_id', 'warehouse_id', 'from_date', 'to_date')
        result = wm.storage.calculate_charge(
            int(package_id), int(warehouse_id), _tenant(), from_date, to_date,
            calculated_by=data.get('calculated_by'),
        )
        return jsonify({"status": "Success", "charge": result.to_dict()}), 201

    @app.route(f'{prefix}/storage/charges/invoice', methods=['POST'])
    def invoice_storage_charges():
        """Expected JSON: {"charge_ids": [1, 2], "invoice_id": "INV-1001"}"""
        data = _body()
        charge_ids, invoice_id = _require(data, 'charge_ids', 'invoice_id')
        if not isinstance(charge_ids, list):
            raise InvalidRangeError("charge_ids must be a list")
        updated = wm.storage.mark_invoiced([int(i) for i in charge_ids], str(invoice_id), _tenant())
        return jsonify({"status": "Success", "updated": updated})

    @app.route(f'{prefix}/storage/charges/unbilled', methods=['GET'])
    def unbilled_storage_charges():
        charges = wm.storage.get_unbilled_charges(_tenant())
        return jsonify({"charges": [_charge_to_dict(c) for c in charges]})

    return app


# --- RUN THE APP ---
if __name__ == '__main__':
    create_app().run(debug=True, port=5000)
