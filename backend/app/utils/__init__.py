from app.utils.security import (
    create_access_token,
    decode_token,
    generate_backup_codes,
    hash_backup_code,
    verify_totp,
)

__all__ = [
    "create_access_token",
    "decode_token",
    "generate_backup_codes",
    "hash_backup_code",
    "verify_totp",
]
