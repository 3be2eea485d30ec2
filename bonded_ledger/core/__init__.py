from bonded_ledger.core.config import settings
from bonded_ledger.core.database import get_db, Base, get_db_session
