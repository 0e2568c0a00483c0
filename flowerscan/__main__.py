"""
Run the API server.

    DATABASE_URL=sqlite:///./flowerscan.db QR_SECRET=dev python -m flowerscan
"""
import argparse

import uvicorn


def main():
    ap = argparse.ArgumentParser(description="FlowerScan API server")
    ap.add_argument("--host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=8000)
    ap.add_argument("--log-level", default="info")
    args = ap.parse_args()

    # single worker: the local lock backend is per process
    uvicorn.run(
        "flowerscan.server:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
