#!/usr/bin/env python3
"""
Cooperative Banking Entry Point

Starts the FastAPI server with the configured storage backend.
Configuration is read from COOPBANK_* environment variables or a .env file.
"""

import sys

from coop_banking.api import run_server
from coop_banking.config import get_config
from coop_banking.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    setup_logging(config.log_level)

    print("🏦 Starting Cooperative Banking Core...")
    print(f"💾 Storage: {config.database_url}")
    print("🔒 Audit trail active" if config.enable_audit_logging else "⚠️  Audit trail disabled")
    print(f"🌐 API available at: http://localhost:{config.api_port}")
    print(f"📚 Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\n👋 Shutting down Cooperative Banking Core...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
