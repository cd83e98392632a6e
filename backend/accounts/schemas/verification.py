from pydantic import BaseModel, EmailStr

from accounts.models.verification_code import CodePurpose


class SendCodeRequest(BaseModel):
    email: EmailStr
    type: CodePurpose


class CheckCodeRequest(BaseModel):
    email: EmailStr
    code: str
    type: CodePurpose


class MessageResponse(BaseModel):
    message: str
