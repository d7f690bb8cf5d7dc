import sys

from quantlab.cli import main

raise SystemExit(main(sys.argv[1:]))
