import sys

from telegram_pi_bot import main

if __name__ == "__main__":
    sys.exit(main())
