from rollout_replay.sdk.client.asynchronous.async_client import AsyncRolloutTrackerClient

__all__ = ["AsyncRolloutTrackerClient"]
