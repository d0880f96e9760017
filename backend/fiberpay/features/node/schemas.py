from pydantic import BaseModel


class NodeInfoResponse(BaseModel):
    version: str
    public_key: str
    node_name: str | None
    addresses: list[str]
    channel_count: int
    pending_channel_count: int
    peers_count: int


class ChannelResponse(BaseModel):
    channel_id: str
    peer_id: str
    state_name: str
    local_balance: int
    remote_balance: int
    local_balance_ckb: str


class PeerResponse(BaseModel):
    peer_id: str
    pubkey: str | None
    address: str | None


class ConnectPeerRequest(BaseModel):
    address: str
