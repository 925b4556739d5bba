"""Sample baseline quotation for an outdoor apparel order ($87,150 total)."""

from __future__ import annotations

from supplier_negotiation.models import BaselineItem, VolumeTier

SAMPLE_BASELINE: list[BaselineItem] = [
    BaselineItem(
        sku="JKT-100",
        description="Alpine shell jacket, 3-layer",
        quantity=300,
        unit_price=145.00,
        total_price=43_500.00,
        volume_tiers=[VolumeTier(quantity=600, unit_price=138.00, total_price=82_800.00)],
    ),
    BaselineItem(
        sku="PNT-200",
        description="Trail softshell pant",
        quantity=400,
        unit_price=62.50,
        total_price=25_000.00,
    ),
    BaselineItem(
        sku="FLC-300",
        description="Grid fleece midlayer",
        quantity=250,
        unit_price=54.60,
        total_price=13_650.00,
    ),
    BaselineItem(
        sku="BNE-400",
        description="Merino rib beanie",
        quantity=500,
        unit_price=10.00,
        total_price=5_000.00,
    ),
]
