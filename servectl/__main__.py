import sys

from servectl.launcher import main

sys.exit(main())
