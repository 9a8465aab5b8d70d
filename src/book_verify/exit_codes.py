from __future__ import annotations

OK = 0
ERR_VERIFY = 1
ERR_EXTRACTION = 2
ERR_USAGE = 2
ERR_CONFIG = 2
ERR_INTERNAL = 99
