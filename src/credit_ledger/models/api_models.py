from pydantic import AwareDatetime, BaseModel, Field


class CheckCreditsRequest(BaseModel):
    user_id: str
    app_key: str
    operation: str


class DeductCreditsRequest(BaseModel):
    user_id: str
    app_key: str
    operation: str
    reference_id: str | None = None


class AllocateSubscriptionRequest(BaseModel):
    user_id: str
    amount: int = Field(gt=0)
    app_key: str
    reference_id: str | None = None


class AllocateTopUpRequest(BaseModel):
    user_id: str
    amount: int = Field(gt=0)
    pack_name: str | None = None
    reference_id: str | None = None


class RetentionBonusRequest(BaseModel):
    user_id: str
    amount: int = Field(gt=0)
    reference_id: str | None = None


class AllocateTrialRequest(BaseModel):
    user_id: str
    amount: int = Field(gt=0)
    app_key: str
    trial_ends_at: AwareDatetime
    reference_id: str | None = None


class ExpireTrialRequest(BaseModel):
    user_id: str
    app_key: str | None = None
    reason: str = "manual"


class ExpireTrialResponse(BaseModel):
    user_id: str
    expired: int


class MergeTrialRequest(BaseModel):
    user_id: str
    app_key: str | None = None


class CapResponse(BaseModel):
    user_id: str
    cap: int


class WebhookResponse(BaseModel):
    received: bool
    duplicate: bool = False
