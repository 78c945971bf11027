"""Twitch endpoints, client identity and protocol strings."""

from enum import Enum

PUBSUB_URL = "wss://pubsub-edge.twitch.tv/v1"
GQL_URL = "https://gql.twitch.tv/gql"
TWITCH_URL = "https://www.twitch.tv"
USHER_URL = "https://usher.ttvnw.net/api/channel/hls"
OAUTH_DEVICE_URL = "https://id.twitch.tv/oauth2/device"
OAUTH_TOKEN_URL = "https://id.twitch.tv/oauth2/token"
OAUTH_VALIDATE_URL = "https://id.twitch.tv/oauth2/validate"
ACTIVATE_URL = "https://www.twitch.tv/activate"

# Android TV client
CLIENT_ID = "ue6666qo983tsx6so1t0vnawi233wa"
USER_AGENT = (
    "Mozilla/5.0 (Linux; Android 7.1; Smart Box C1) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/108.0.0.0 Safari/537.36"
)
OAUTH_SCOPES = "channel_read chat:read user_blocks_edit user_blocks_read user_follows_edit user_read"


class GqlOperation(str, Enum):
    """Persisted GQL queries used by the miner."""

    CLAIM_COMMUNITY_POINTS = "ClaimCommunityPoints"
    GET_ID_FROM_LOGIN = "GetIDFromLogin"
    CHANNEL_POINTS_CONTEXT = "ChannelPointsContext"
    VIDEO_PLAYER_STREAM_INFO_OVERLAY_CHANNEL = "VideoPlayerStreamInfoOverlayChannel"
    PLAYBACK_ACCESS_TOKEN = "PlaybackAccessToken"

    def payload(self, variables: dict) -> dict:
        return {
            "operationName": self.value,
            "variables": variables,
            "extensions": {
                "persistedQuery": {"version": 1, "sha256Hash": GQL_HASHES[self]},
            },
        }


GQL_HASHES: dict[GqlOperation, str] = {
    GqlOperation.CLAIM_COMMUNITY_POINTS: "46aaeebe02c99afdf4fc97c7c0cba964124bf6b0af229395f1f6d1feed05b3d0",
    GqlOperation.GET_ID_FROM_LOGIN: "94e82a7b1e3c21e186daa73ee2afc4b8f23bade1fbbff6fe8ac133f50a2f58ca",
    GqlOperation.CHANNEL_POINTS_CONTEXT: "1530a003a7d374b0380b79db0be0534f30ff46e61cffa2bc0e2468a909fbc024",
    GqlOperation.VIDEO_PLAYER_STREAM_INFO_OVERLAY_CHANNEL: (
        "a5f2e34d626a9f4f5c0204f910bab2194948a9502089be558bb6e779a9e1b3d2"
    ),
    GqlOperation.PLAYBACK_ACCESS_TOKEN: "3093517e37e4f4cb48906155bcd894150aef92617939236d2508f3375ab732ce",
}


class TopicType(str, Enum):
    COMMUNITY_POINTS_USER = "community-points-user-v1"
    VIDEO_PLAYBACK_BY_ID = "video-playback-by-id"

    def topic(self, target_id: str) -> str:
        return f"{self.value}.{target_id}"


class CommunityPointsMessageType(str, Enum):
    CLAIM_AVAILABLE = "claim-available"
    POINTS_EARNED = "points-earned"


class VideoPlaybackMessageType(str, Enum):
    STREAM_UP = "stream-up"
    STREAM_DOWN = "stream-down"
    VIEWCOUNT = "viewcount"


WATCH_STREAK_REASON = "WATCH_STREAK"
