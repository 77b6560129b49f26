import os

from dotenv import load_dotenv

# Loads variables from the .env file in the working directory
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///oficina.db")
SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() in ("true", "1", "yes", "on")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Cancellation policy
FULL_REFUND_WINDOW_HOURS = int(os.getenv("FULL_REFUND_WINDOW_HOURS", "24"))
LATE_CANCEL_REFUND_PERCENTAGE = int(os.getenv("LATE_CANCEL_REFUND_PERCENTAGE", "80"))

# Rescheduling policy
RESCHEDULE_WINDOW_HOURS = int(os.getenv("RESCHEDULE_WINDOW_HOURS", "24"))
MAX_RESCHEDULES = int(os.getenv("MAX_RESCHEDULES", "2"))

DEFAULT_DEPOSIT_AMOUNT = float(os.getenv("DEFAULT_DEPOSIT_AMOUNT", "200000"))
