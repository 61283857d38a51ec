# main.py

import os
from datetime import date, timedelta

from logiyard.controller import YardMaster
from logiyard.errors import CapacityExceededError, OverlapError
from logiyard.log import configure_logging

TENANT = 'demo'
DEMO_DB = 'warehouse.db'

# ensure a clean slate for every run
if os.path.exists(DEMO_DB):
    os.remove(DEMO_DB)
configure_logging("WARNING")
wm = YardMaster(f'sqlite:///{DEMO_DB}', seed=True)

warehouse_id = 1
europe = wm.zones.resolve_zones('FR', TENANT)[0]

print("\n--- 1. QUOTES: Pricing a 2 kg parcel to Jamaica ---")
for quote in wm.calculator.calculate(TENANT, warehouse_id, 'JM', '2', declared_value='100'):
    floor = " (minimum charge applied)" if quote.min_charge_applied else ""
    print(f"  {quote.service_type:<8} weight {quote.weight_charge} + base {quote.base_rate} "
          f"= {quote.subtotal} -> {quote.applied_charge}{floor}")
    print(f"           + insurance {quote.insurance} + handling {quote.handling_fee} "
          f"= TOTAL {quote.total} {quote.currency}")

print("\n--- 2. OVERLAP GUARD: Two rates claiming the same window ---")
first = wm.rates.create_rate(TENANT, warehouse_id, europe, 'express', '40', '9', '50',
                             effective_from='2025-01-01', effective_until='2025-06-30')
print(f"-> CREATED: Rate {first.id} for {first.effective_from}..{first.effective_until}")
try:
    wm.rates.create_rate(TENANT, warehouse_id, europe, 'express', '42', '9', '50',
                         effective_from='2025-06-15')
except OverlapError as e:
    print(f"   !! REJECTED: {e.message} (conflicts with rate {e.conflicting_id})")
successor = wm.rates.create_rate(TENANT, warehouse_id, europe, 'express', '42', '9', '50',
                                 effective_from='2025-07-01')
print(f"-> CREATED: Rate {successor.id} from {successor.effective_from}, open-ended")

print("\n--- 3. BIN CAPACITY: Filling the single-slot bin A01 ---")
a01 = 1
wm.bins.assign(1, a01, reason='Inbound', actor='demo')
print("-> ASSIGNED: Package 1 to bin A01")
try:
    wm.bins.assign(2, a01, reason='Inbound', actor='demo')
except CapacityExceededError as e:
    print(f"   !! FAILURE: {e.message}")
wm.bins.remove(package_id=1, reason='Outbound', actor='demo')
print("<- REMOVED: Package 1 from bin A01")
wm.bins.assign(2, a01, reason='Inbound', actor='demo')
print("-> ASSIGNED: Package 2 to bin A01")

best = wm.bins.find_best_available_bin(warehouse_id, is_fragile=True, is_high_value=True)
print(f"-> SUGGESTED for fragile, high-value package 3: {best}")
wm.bins.assign(3, best.bin_id, reason='High value', actor='demo')

print("\n--- 4. STORAGE BILLING: Ten days in storage ---")
today = date.today()
for package_id in (2, 3):
    charge = wm.storage.calculate_charge(package_id, warehouse_id, TENANT, today - timedelta(days=10), today)
    print(f"  Package {package_id}: {charge.free_days_applied} free + {charge.chargeable_days} chargeable days, "
          f"base {charge.base_fee} + bin {charge.bin_fee} = {charge.total} {charge.currency}")

unbilled = wm.storage.get_unbilled_charges(TENANT)
count = wm.storage.mark_invoiced([c.id for c in unbilled], 'INV-0001', TENANT)
print(f"-> INVOICED: {count} storage charges attached to INV-0001")

# --- 5. FINAL STATE CHECK ---
print("\n--- FINAL WAREHOUSE CAPACITY ---")
report = wm.bins.get_warehouse_capacity(warehouse_id)
for zone in report.zones:
    print(f"  {zone.zone_name:<9} {zone.used_capacity}/{zone.total_capacity} ({zone.utilization_percent}%)")
    for bin_obj in zone.bins:
        print(f"    {bin_obj}")
print(f"  Overall utilization: {report.utilization_percent}%")
