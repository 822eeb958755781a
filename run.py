#!/usr/bin/env python3
"""
Entry point for the tournament service.

Usage:
    python run.py                    # Run the API server (default)
    python run.py server             # Run the API server explicitly
    python run.py sweep              # Run one status sweep and exit

Environment Variables:
    FLASK_ENV: development, production or testing (default: development)
    PORT: Port to run on (default: 8000)
    SWEEP_ENABLED: start the hourly status sweep with the server (default: true)
"""
import os
import sys


def run_server():
    """Run the API server; the status sweep starts with it when enabled."""
    from arena.app import create_app

    app = create_app()
    port = int(os.getenv('PORT', 8000))
    debug = os.getenv('FLASK_ENV', 'development') == 'development'

    print(f"Starting tournament service on port {port}...")
    # The reloader would fork a second process with its own scheduler
    app.run(host='0.0.0.0', port=port, debug=debug, use_reloader=False)


def run_sweep():
    """Run a single sweep, e.g. from an external cron."""
    os.environ['SWEEP_ENABLED'] = 'false'
    from arena.app import create_app

    app = create_app()
    result = app.sweeper.run_once()
    if result is None:
        print("Sweep did not complete; see logs")
        sys.exit(1)
    print(f"Sweep complete: {result}")


if __name__ == '__main__':
    mode = sys.argv[1] if len(sys.argv) > 1 else 'server'

    if mode == 'server':
        run_server()
    elif mode == 'sweep':
        run_sweep()
    else:
        print(f"Unknown mode: {mode}")
        print("Usage: python run.py [server|sweep]")
        sys.exit(1)
