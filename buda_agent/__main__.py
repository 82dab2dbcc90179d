# buda_agent/__main__.py
import sys

from buda_agent.main import main

if __name__ == "__main__":
    sys.exit(main())
