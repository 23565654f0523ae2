from typing import Annotated
from uuid import UUID
from fastapi import Depends
from app.modules.auth.utils import get_current_user_id

CurrentUserId = Annotated[UUID, Depends(get_current_user_id)]
