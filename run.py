#!/usr/bin/env python3
"""
Funds Core Entry Point

Starts the FastAPI server with the funds-movement core.
"""

import sys

from funds_core.api import run_server
from funds_core.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("🏦 Starting Funds Core...")
    print(f"🗄️  Store: {config.database_url.split('@')[-1]}")
    print("🔒 Audit trail active")
    print("💰 All financial calculations use Decimal precision")
    print(f"🌐 API available at: http://localhost:{config.api_port}")
    print(f"📚 Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\n👋 Shutting down Funds Core...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
