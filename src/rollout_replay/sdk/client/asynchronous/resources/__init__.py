from rollout_replay.sdk.client.asynchronous.resources.rollout import AsyncRolloutSessions

__all__ = ["AsyncRolloutSessions"]
