"""
Profile documents: identity, display data, push token and last-seen time.
"""
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from chatsync.core.database import Database
from chatsync.core.errors import DuplicateNameError, StoreUnavailableError
from chatsync.core.logging import get_logger
from chatsync.models.profile import UserProfile
from chatsync.schemas.user import SignInRequest

logger = get_logger(__name__)


class ProfileStore:
    def __init__(self, db: Database):
        self._db = db

    async def sign_in(self, identity: SignInRequest) -> UserProfile:
        """Create the profile on first sign-in, refresh it afterwards.

        A returning user only gets ``last_seen`` and the push token updated;
        the token is cleared when this sign-in did not yield one.
        """
        try:
            profile = await run_in_threadpool(self._sign_in_sync, identity)
        except SQLAlchemyError as e:
            logger.error("Profile sync failed", extra={"extra_data": {"uid": identity.uid, "error": str(e)}})
            raise StoreUnavailableError("Profile store unavailable") from e

        logger.info(
            "User signed in",
            extra={"extra_data": {"uid": profile.uid, "has_push_token": bool(profile.fcm_token)}},
        )
        return profile

    async def get(self, uid: str) -> Optional[UserProfile]:
        try:
            return await run_in_threadpool(self._get_sync, uid)
        except SQLAlchemyError as e:
            raise StoreUnavailableError("Profile store unavailable") from e

    async def list_profiles(self) -> List[UserProfile]:
        try:
            return await run_in_threadpool(self._list_sync)
        except SQLAlchemyError as e:
            raise StoreUnavailableError("Profile store unavailable") from e

    async def get_push_token(self, uid: str) -> Optional[str]:
        """Fresh lookup of a user's push token; None when unregistered."""
        profile = await self.get(uid)
        if profile is None or not profile.fcm_token:
            return None
        return profile.fcm_token

    # ---- blocking helpers, run on the threadpool ----

    def _sign_in_sync(self, identity: SignInRequest) -> UserProfile:
        now = datetime.now(timezone.utc)
        with self._db.session() as db:
            if identity.name:
                same_name = (
                    db.query(UserProfile)
                    .filter(UserProfile.name == identity.name, UserProfile.uid != identity.uid)
                    .first()
                )
                if same_name is not None:
                    raise DuplicateNameError("A user with this name already exists.")

            try:
                profile = db.get(UserProfile, identity.uid)
                if profile is None:
                    profile = UserProfile(
                        uid=identity.uid,
                        name=identity.name,
                        email=identity.email,
                        photo_url=identity.photo_url,
                        fcm_token=identity.fcm_token or None,
                        last_seen=now,
                    )
                    db.add(profile)
                else:
                    profile.last_seen = now
                    profile.fcm_token = identity.fcm_token or None
                db.commit()
                db.refresh(profile)
                db.expunge(profile)
            except SQLAlchemyError:
                db.rollback()
                raise
            return profile

    def _get_sync(self, uid: str) -> Optional[UserProfile]:
        with self._db.session() as db:
            profile = db.get(UserProfile, uid)
            if profile is not None:
                db.expunge(profile)
            return profile

    def _list_sync(self) -> List[UserProfile]:
        with self._db.session() as db:
            profiles = db.query(UserProfile).order_by(UserProfile.name.asc(), UserProfile.uid.asc()).all()
            for profile in profiles:
                db.expunge(profile)
            return profiles
