"""
Liveness Supervisor

Keeps a fixed fleet of worker agents alive:
- poll cycle: query every agent's status, restart any that is not running
- daily sweep: restart every agent, spaced apart to spare the command path

Failures are isolated per agent. Restarts are fire-and-forget; health is only
re-observed on the next poll cycle.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

import aiohttp
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from .errors import AgentUnreachable


@dataclass
class HealthStatus:
    """Agent health observed during one poll cycle (never persisted)"""
    agent_id: str
    is_running: bool
    observed_at: datetime
    error: Optional[str] = None

    def __repr__(self):
        status = "✓ RUNNING" if self.is_running else "✗ DOWN"
        return f"HealthStatus({self.agent_id}: {status})"


class WorkerAgent:
    """Base class for supervised agents"""

    def __init__(self, agent_id: str):
        self.agent_id = agent_id

    async def is_running(self) -> bool:
        """Query the status capability; raises on any query failure"""
        raise NotImplementedError

    async def restart(self) -> bool:
        """Invoke the restart capability; True when the command was accepted"""
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}({self.agent_id})"


class HttpWorkerAgent(WorkerAgent):
    """
    Agent behind an HTTP status/command API

    GET  {base_url}/api/{agent_id}/status -> {"isRunning": bool}
    POST {base_url}/api/{agent_id}/start  -> 2xx when accepted
    """

    def __init__(self, agent_id: str, base_url: str, timeout_seconds: float = 10.0):
        super().__init__(agent_id)
        self.base_url = base_url.rstrip('/')
        self.timeout_seconds = timeout_seconds

    @property
    def status_url(self) -> str:
        return f"{self.base_url}/api/{self.agent_id}/status"

    @property
    def restart_url(self) -> str:
        return f"{self.base_url}/api/{self.agent_id}/start"

    def _session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_seconds))

    async def is_running(self) -> bool:
        try:
            async with self._session() as session:
                async with session.get(self.status_url) as response:
                    if response.status >= 300:
                        raise AgentUnreachable(self.agent_id, f"status HTTP {response.status}")
                    body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise AgentUnreachable(self.agent_id, str(e) or type(e).__name__) from e

        if not isinstance(body, dict) or 'isRunning' not in body:
            raise AgentUnreachable(self.agent_id, f"malformed status response: {str(body)[:100]}")
        return body['isRunning'] is True

    async def restart(self) -> bool:
        try:
            async with self._session() as session:
                async with session.post(self.restart_url) as response:
                    return 200 <= response.status < 300
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AgentUnreachable(self.agent_id, str(e) or type(e).__name__) from e


class LivenessSupervisor:
    """
    Watchdog for worker agents

    Usage:
        supervisor = LivenessSupervisor(agents)
        supervisor.start()   # idempotent
        ...
        supervisor.stop()    # safe when not running
    """

    POLL_JOB_ID = 'liveness_poll'
    DAILY_JOB_ID = 'daily_fleet_restart'

    def __init__(
        self,
        agents: List[WorkerAgent],
        poll_interval_seconds: float = 30.0,
        daily_restart_hour: int = 6,
        daily_restart_minute: int = 0,
        restart_spacing_seconds: float = 1.0
    ):
        """
        Initialize supervisor

        Args:
            agents: Fixed agent set
            poll_interval_seconds: Poll cycle period
            daily_restart_hour: Hour (UTC) of the daily full-fleet restart
            daily_restart_minute: Minute of the daily full-fleet restart
            restart_spacing_seconds: Minimum delay between restarts in the daily sweep
        """
        self.agents = list(agents)
        self.poll_interval_seconds = poll_interval_seconds
        self.daily_restart_hour = daily_restart_hour
        self.daily_restart_minute = daily_restart_minute
        self.restart_spacing_seconds = restart_spacing_seconds

        self._scheduler: Optional[AsyncIOScheduler] = None
        self._monitoring = False

        logger.info(f"Liveness supervisor initialized for {[a.agent_id for a in self.agents]}")

    @property
    def is_monitoring(self) -> bool:
        return self._monitoring

    def start(self):
        """Begin monitoring; no-op when already monitoring"""
        if self._monitoring:
            return

        # A shut-down AsyncIOScheduler cannot be started again
        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(
            self.poll_cycle,
            IntervalTrigger(seconds=self.poll_interval_seconds),
            id=self.POLL_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.add_job(
            self.restart_all,
            CronTrigger(hour=self.daily_restart_hour, minute=self.daily_restart_minute),
            id=self.DAILY_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        self._monitoring = True

        logger.info(f"🤖 Auto-restart monitoring ENABLED (every {self.poll_interval_seconds:g}s, "
                    f"daily restart {self.daily_restart_hour:02d}:{self.daily_restart_minute:02d} UTC)")

    def stop(self):
        """Halt monitoring; safe when not running"""
        if not self._monitoring:
            return
        self._monitoring = False

        if self._scheduler is not None:
            self._scheduler.remove_all_jobs()
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        logger.info("🤖 Auto-restart monitoring DISABLED")

    async def check_agent(self, agent: WorkerAgent) -> HealthStatus:
        """Observe one agent; any query error counts as not running"""
        try:
            running = await agent.is_running()
            return HealthStatus(agent.agent_id, bool(running), datetime.now(timezone.utc))
        except Exception as e:
            logger.debug(f"Status query for {agent.agent_id} failed: {e}")
            return HealthStatus(agent.agent_id, False, datetime.now(timezone.utc), error=str(e))

    async def check_health(self) -> List[HealthStatus]:
        """Observe every agent"""
        return [await self.check_agent(agent) for agent in self.agents]

    async def restart_agent(self, agent: WorkerAgent) -> bool:
        """Issue one restart command and log the outcome; never raises"""
        try:
            accepted = await agent.restart()
        except Exception as e:
            logger.error(f"❌ Error restarting {agent.agent_id} agent: {e}")
            return False

        if accepted:
            logger.info(f"✅ {agent.agent_id} agent restarted successfully")
        else:
            logger.error(f"❌ Failed to restart {agent.agent_id} agent")
        return accepted

    async def poll_cycle(self) -> List[str]:
        """
        Check every agent and restart the ones that are down

        Returns:
            Ids of agents a restart was issued for
        """
        restarted = []
        for agent in self.agents:
            health = await self.check_agent(agent)
            if health.is_running:
                continue

            logger.warning(f"🚨 {agent.agent_id} agent is down, restarting..."
                           + (f" ({health.error})" if health.error else ""))
            await self.restart_agent(agent)
            restarted.append(agent.agent_id)

        return restarted

    async def ensure_all_running(self) -> List[str]:
        """One-shot check used at process start"""
        logger.info("🚀 Ensuring all agents are running...")
        return await self.poll_cycle()

    async def restart_all(self) -> Dict[str, bool]:
        """
        Restart the whole fleet, spaced by restart_spacing_seconds

        Returns:
            {agent_id: restart accepted}
        """
        logger.info("🔄 Daily fleet restart...")
        results = {}
        for index, agent in enumerate(self.agents):
            if index > 0 and self.restart_spacing_seconds > 0:
                await asyncio.sleep(self.restart_spacing_seconds)
            results[agent.agent_id] = await self.restart_agent(agent)

        accepted = sum(1 for ok in results.values() if ok)
        logger.info(f"✅ Fleet restart issued: {accepted}/{len(results)} accepted")
        return results
