import sys

from showtime_crawler.cli import main

sys.exit(main())
