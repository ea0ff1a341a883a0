"""Wire format of encrypted text payloads.

A blob is `ciphertext|iv|wrappedKey`, each segment standard base64.
"""

from __future__ import annotations

import re

BLOB_DELIMITER = "|"

ENCRYPTED_BLOB_PATTERN = re.compile(r"^[A-Za-z0-9+/=]+\|[A-Za-z0-9+/=]+\|[A-Za-z0-9+/=]+$")
