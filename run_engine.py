"""
run_engine.py - Single entry point for the TIDE liquidity engine

    python run_engine.py                 # simulate mode unless ENGINE_MODE=live
    python run_engine.py run --once      # one cycle, then exit
    python run_engine.py status          # print a status snapshot
"""

import sys

# Allow running from a checkout without installing
sys.path.insert(0, 'src')


def main() -> int:
    from tide.main import main as engine_main

    return engine_main(sys.argv[1:])


if __name__ == "__main__":
    raise SystemExit(main())
