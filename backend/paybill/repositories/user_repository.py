from uuid import UUID

from sqlalchemy.orm import Session

from paybill.models.user import User


class UserRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_active(self, user_id: UUID) -> User | None:
        return (
            self.db.query(User)
            .filter(User.id == user_id, User.is_active.is_(True))
            .first()
        )
