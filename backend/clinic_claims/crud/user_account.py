from sqlalchemy.orm import Session

from clinic_claims.db.models import UserAccount


def normalize_username(username: str) -> str:
    return username.strip().lower()


def get_user_account_by_username(db: Session, username: str) -> UserAccount | None:
    return (
        db.query(UserAccount)
        .filter(UserAccount.username_normalized == normalize_username(username))
        .first()
    )


def add_user_account(db: Session, username: str, **fields) -> UserAccount:
    """Stage a new account in the current transaction. Does not commit."""
    account = UserAccount(
        username=username.strip(),
        username_normalized=normalize_username(username),
        **fields,
    )
    db.add(account)
    db.flush()
    return account
