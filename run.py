#!/usr/bin/env python3
"""
Provision the chatbot infrastructure.

Usage:
  python run.py                        # dry-run deploy of the dev environment
  python run.py --plan                 # print provisioning batches only
  python run.py --environment prod --live
  python run.py --existing-registry /subscriptions/.../registries/acrshared=acrshared.azurecr.io
"""
import asyncio
import sys

# Load .env before anything else
from dotenv import load_dotenv
load_dotenv(override=False)  # override=False: real env vars take precedence

from deployer.main import main  # noqa: E402


if __name__ == "__main__":
    sys.exit(asyncio.run(main(sys.argv[1:])))
