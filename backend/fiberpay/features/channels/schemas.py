from pydantic import BaseModel


class CheckRouteRequest(BaseModel):
    recipient: str
    probe_amount_ckb: str | None = None


class OpenChannelRequest(BaseModel):
    peer_id: str
    funding_amount_ckb: str | None = None


class ChannelSetupResponse(BaseModel):
    status: str
    error_text: str | None
    remote_state_name: str | None
    elapsed_seconds: int
    available_balance: int
    available_balance_ckb: str


class CheckRouteResponse(ChannelSetupResponse):
    can_route: bool
