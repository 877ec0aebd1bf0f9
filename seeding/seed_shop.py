#!/usr/bin/env python3
"""
Provision a shop in the wholesale-rules-{env} / shop-tokens-{env} DynamoDB tables.

- Writes the shop's wholesale rule (validated the same way as the admin endpoint)
- Optionally stores the shop's Admin API token (KMS-encrypted when --kms-key-arn is given)

Usage:
  python seed_shop.py --environment dev --shop acme.myshopify.com
  python seed_shop.py --environment prod --shop acme.myshopify.com \
      --tag Wholesaler --threshold-cents 150000 \
      --token shpat_... --kms-key-arn arn:aws:kms:...
"""

import argparse
import sys
from typing import Optional

import boto3

from credentials import ShopTokenStore
from rule_store import (DEFAULT_THRESHOLD_CENTS, DEFAULT_WHOLESALE_TAG, DynamoRuleStore,
                        ValidationError, validate_rule)
from shopify_client import is_valid_shop_domain

VALID_ENVS = {"dev", "prod"}


def table_names(env: str):
    if env not in VALID_ENVS:
        raise ValueError(f"Unsupported environment '{env}'. Choose from {sorted(VALID_ENVS)}.")
    return f"wholesale-rules-{env}", f"shop-tokens-{env}"


def seed_shop(dynamodb, environment: str, shop: str, tag: str, threshold_cents,
              token: Optional[str] = None, kms_key_arn: Optional[str] = None) -> dict:
    """Returns the stored rule as a dict. Raises ValidationError before writing anything."""
    rule = validate_rule(tag, threshold_cents)
    rules_table, tokens_table = table_names(environment)

    saved = DynamoRuleStore(dynamodb.Table(rules_table)).set(shop, rule)
    print(f"✓ rule {shop} ({environment}) -> {saved.to_dict()}")

    if token:
        ShopTokenStore(dynamodb.Table(tokens_table), kms_key_arn=kms_key_arn or "").save_token(shop, token)
        print(f"✓ token {shop} ({environment}){' [encrypted]' if kms_key_arn else ''}")

    return saved.to_dict()


def main(argv=None):
    ap = argparse.ArgumentParser(description="Seed a shop's wholesale rule and access token")
    ap.add_argument("--region", default="us-west-2")
    ap.add_argument("--environment", default="dev", choices=sorted(VALID_ENVS))
    ap.add_argument("--shop", required=True)
    ap.add_argument("--tag", default=DEFAULT_WHOLESALE_TAG)
    ap.add_argument("--threshold-cents", default=str(DEFAULT_THRESHOLD_CENTS))
    ap.add_argument("--token")
    ap.add_argument("--kms-key-arn")
    args = ap.parse_args(argv)

    if not is_valid_shop_domain(args.shop):
        print(f"Error: --shop must be a *.myshopify.com domain, got {args.shop!r}")
        sys.exit(1)

    dynamodb = boto3.resource("dynamodb", region_name=args.region)
    try:
        seed_shop(dynamodb, args.environment, args.shop.lower(), args.tag, args.threshold_cents,
                  token=args.token, kms_key_arn=args.kms_key_arn)
    except ValidationError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
