#!/usr/bin/env python3
"""
Create the schema and seed default proposal and contract templates.

Reads the database URL from the active configuration (packaged defaults,
DEAL_CONFIG site file, DATABASE_URL).  Seeding is skipped for a kind that
already has an active template, so the script can be re-run safely.

Usage:
  python3 scripts/init_db.py [--config site.yaml] [--drop] [--admin-id UUID]
"""

import argparse
import sys
from pathlib import Path
from uuid import UUID, uuid4

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

PROPOSAL_HTML = """\
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><style>
  body { font-family: Arial, sans-serif; color: #1f2937; font-size: 12px; }
  table { width: 100%; border-collapse: collapse; }
  th, td { border-bottom: 1px solid #e5e7eb; padding: 6px; text-align: left; }
  .num { text-align: right; }
</style></head>
<body>
  <img src="{{ companyLogoUrl }}" alt="logo" height="48">
  <h1>Service Proposal</h1>
  <p>Date: {{ proposalDate }}<br>Valid until: {{ validUntilDate }}</p>
  <p>
    {{ clientName }}{% if clientPosition %}, {{ clientPosition }}{% endif %}<br>
    {{ clientCompany }}<br>{{ clientAddress }}<br>{{ clientEmail }} | {{ clientPhone }}
  </p>
  <table>
    <tr><th>Service</th><th class="num">Qty</th><th class="num">Unit price</th><th class="num">Subtotal</th></tr>
    {% for s in services %}
    <tr>
      <td>{{ s.get('name', '') }}{% if s.get('description') %}<br><small>{{ s.description }}</small>{% endif %}</td>
      <td class="num">{{ s.get('quantity', '') }}</td>
      <td class="num">{{ s.unitPrice | currency }}</td>
      <td class="num">{{ s.subtotal | currency }}</td>
    </tr>
    {% endfor %}
  </table>
  <p class="num">
    Subtotal {{ pricing.subtotal | currency }}<br>
    {% if pricing.discount %}Discount -{{ pricing.discount | currency }}<br>{% endif %}
    VAT ({{ pricing.taxRate }}%) {{ pricing.tax | currency }}<br>
    <strong>Total {{ pricing.total | currency }}</strong>
  </p>
  <p>Payment terms: {{ terms.paymentTerms }}. This proposal is valid for {{ terms.validityDays }} days.</p>
  {% if terms.notes %}<p>{{ terms.notes }}</p>{% endif %}
</body>
</html>
"""

CONTRACT_HTML = """\
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><style>
  body { font-family: "Times New Roman", serif; font-size: 12px; line-height: 1.5; }
  h1 { text-align: center; }
</style></head>
<body>
  <h1>Waste Management Service Agreement</h1>
  <p>Contract No. {{ contractNumber }} &middot; {{ contractDate }}</p>
  <p>This agreement is entered into by WastePH and <strong>{{ companyName }}</strong>,
     represented by {{ clientName }}, with address at {{ clientAddress }}.</p>
  <h2>1. Term</h2>
  <p>{{ contractDuration }}</p>
  <h2>2. Services</h2>
  <p>Collection schedule: {{ collectionSchedule }}{% if collectionScheduleOther %} ({{ collectionScheduleOther }}){% endif %}</p>
  {% if wasteAllowance %}<p>Waste allowance: {{ wasteAllowance }}</p>{% endif %}
  {% if ratePerKg %}<p>Rate per kg: {{ ratePerKg | currency }}</p>{% endif %}
  {% if specialClauses %}<h2>3. Special clauses</h2><p>{{ specialClauses }}</p>{% endif %}
  <h2>Signatories</h2>
  {% for s in signatories %}
  <p>______________________<br>{{ s.get('name', '') }}{% if s.get('position') %}, {{ s.position }}{% endif %}</p>
  {% endfor %}
</body>
</html>
"""


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Create tables and seed default document templates")
    p.add_argument("--config", default=None, help="Site YAML overlaid on the packaged defaults")
    p.add_argument("--drop", action="store_true", help="Drop all tables first")
    p.add_argument(
        "--admin-id",
        default=None,
        help="Actor id recorded as the creator of the seeded templates (default: random)",
    )
    return p.parse_args()


def main() -> int:
    args = _parse_args()

    from deal_config import get_active_config
    from deal_kernel.db.engine import (
        create_tables,
        drop_tables,
        get_session,
        init_engine_from_url,
    )
    from deal_kernel.domain.authorization import Actor, Role
    from deal_kernel.domain.lifecycle import TemplateKind
    from deal_kernel.exceptions import NoTemplatesConfiguredError
    from deal_kernel.services.template_service import TemplateService

    config = get_active_config(args.config)
    admin = Actor(UUID(args.admin_id) if args.admin_id else uuid4(), Role.ADMIN)

    print()
    print("  [1/3] Connecting...")
    try:
        init_engine_from_url(
            config.database.url,
            echo=config.database.echo,
            pool_size=config.database.pool_size,
            max_overflow=config.database.max_overflow,
            pool_timeout=config.database.pool_timeout,
        )
    except Exception as exc:
        print(f"  ERROR: {exc}", file=sys.stderr)
        return 1

    print("  [2/3] Creating schema...")
    if args.drop:
        drop_tables()
    create_tables()

    print("  [3/3] Seeding default templates...")
    session = get_session()
    templates = TemplateService(
        session, category_templates=config.lifecycle.category_templates
    )
    seeds = (
        (TemplateKind.PROPOSAL, "compactor_hauling", "Standard proposal", PROPOSAL_HTML),
        (TemplateKind.CONTRACT, "long_term_variable", "Standard service agreement", CONTRACT_HTML),
    )
    try:
        for kind, template_type, name, html in seeds:
            try:
                existing = templates.get_default(kind)
            except NoTemplatesConfiguredError:
                created = templates.create(
                    admin, kind, template_type, name, html, is_default=True
                )
                print(f"  created {kind.value} template {created.name!r} ({created.id})")
            else:
                print(f"  {kind.value}: keeping {existing.name!r}")
    finally:
        session.close()

    print()
    print("  Done.")
    print()
    return 0


if __name__ == "__main__":
    sys.exit(main())
