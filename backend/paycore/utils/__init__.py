from paycore.utils.hashing import hash_bytes, hmac_sha256_hex, constant_time_equals
from paycore.utils.validators import validate_clabe, validate_bank_code, validate_email

__all__ = [
    "hash_bytes", "hmac_sha256_hex", "constant_time_equals",
    "validate_clabe", "validate_bank_code", "validate_email",
]
