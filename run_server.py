#!/usr/bin/env python3
"""
AuthScan Orchestrator - Server Launcher

Usage:
    python run_server.py

This will start the API server using settings from config.yaml
"""
import uvicorn


def main():
    # Load configuration from config.yaml
    from authscan.config import SERVER_HOST, SERVER_PORT, APP_DEBUG, APP_NAME, APP_VERSION, ZAP_AUTH_URL

    print(f"""
    {APP_NAME} v{APP_VERSION}
    Serving at:  http://{SERVER_HOST}:{SERVER_PORT}
    ZAP engine:  {ZAP_AUTH_URL}
    Press Ctrl+C to stop
    """)

    uvicorn.run(
        "authscan.app:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=APP_DEBUG,
        log_level="debug" if APP_DEBUG else "info"
    )

if __name__ == "__main__":
    main()
