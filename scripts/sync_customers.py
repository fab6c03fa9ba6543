"""
Pull every customer's email consent from Shopify and reconcile it locally.

Each customer is applied as a bulk-sync signal: newer Shopify state wins,
older state is recorded as stale. Optionally mirrors changes to Klaviyo.

Usage:
    python scripts/sync_customers.py --shop my-shop.myshopify.com [--push-provider] [--dry-run]
    python scripts/sync_customers.py            # every shop with stored settings
"""

import argparse
import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.tasks import sync_platform_customers


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Sync Shopify customer consent into the local store")
    parser.add_argument("--shop", default=os.getenv("SHOP_DOMAIN"), help="shop domain (default: all configured shops)")
    parser.add_argument("--push-provider", action="store_true", help="mirror changed consent to Klaviyo")
    parser.add_argument("--dry-run", action="store_true", help="report what would change without writing")
    args = parser.parse_args(argv)

    result = sync_platform_customers(shop=args.shop, push_provider=args.push_provider, dry_run=args.dry_run)
    print(json.dumps(result, indent=2, default=str))
    return 1 if "error" in result else 0


if __name__ == "__main__":
    sys.exit(main())
