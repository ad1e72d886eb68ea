import sys

from session_runner.main import main

if __name__ == "__main__":
    sys.exit(main())
