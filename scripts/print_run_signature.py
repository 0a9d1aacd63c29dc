from __future__ import annotations

import argparse
import pprint

from spread_backtester.config import load_config
from spread_backtester.signature import run_signature, signal_signature, stable_run_signature


def main():
    p = argparse.ArgumentParser(description="Print effective run parameters and signatures for a config")
    p.add_argument("--config", required=True, help="Path to YAML config")
    args = p.parse_args()

    cfg = load_config(args.config)
    for i, params in enumerate(cfg.run_params()):
        print(f"RUN {i} sig={stable_run_signature(params)}")
        pprint.pprint(run_signature(params))
        print("signal inputs:")
        pprint.pprint(signal_signature(params))
        print()


if __name__ == "__main__":
    main()
