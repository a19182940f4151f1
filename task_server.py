import asyncio
import random
import uuid
from datetime import datetime
from typing import Any, List, Optional

from aiohttp import web
from loguru import logger


class TaskServer:
    """Local stand-in for a long-running task backend.

    POST /tasks creates a task, GET /tasks/{task_id}/status reports on it.
    Status calls first consume `script` entries in order:

    * a status name, e.g. "processing"
    * an int HTTP status, e.g. 404 or 500
    * a dict returned as the JSON body
    * a web.Response returned as-is
    * a (delay, entry) tuple that sleeps before answering with `entry`

    Once the script is exhausted a task stays pending until `completion_time`
    seconds after submission, then completes, failing with `error_rate`.
    """

    def __init__(
        self,
        completion_time: float = 10.0,
        error_rate: float = 0.1,
        script: Optional[List[Any]] = None,
    ):
        self.completion_time = completion_time
        self.error_rate = error_rate
        self.script = list(script or [])
        self.submit_status = 200
        self.submit_body: Any = None  # dict, list or web.Response replacing the generated reply
        self.submit_delay = 0.0
        self.task_id_key = "taskId"
        self.wrap_submission_in_list = False
        self.status_url_mode = "absolute"  # "absolute", "relative" or "none"
        self.tasks = {}
        self.submissions: List[dict] = []
        self.status_calls: List[datetime] = []
        self.app = web.Application()
        self.app.router.add_post("/tasks", self.handle_submit)
        self.app.router.add_get("/tasks/{task_id}/status", self.handle_status)
        self.runner: Optional[web.AppRunner] = None
        self.logger = logger

    async def handle_submit(self, request):
        payload = await request.json()
        self.submissions.append(payload)
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)

        if self.submit_status >= 300:
            self.logger.info(f"Rejecting submission with HTTP {self.submit_status}")
            return web.json_response({"error": "rejected"}, status=self.submit_status)

        if isinstance(self.submit_body, web.StreamResponse):
            return self.submit_body
        if self.submit_body is not None:
            return web.json_response(self.submit_body)

        task_id = f"task_{uuid.uuid4().hex[:12]}"
        self.tasks[task_id] = datetime.now()
        body = {self.task_id_key: task_id, "status": "pending"}

        path = f"/tasks/{task_id}/status"
        if self.status_url_mode == "absolute":
            body["statusUrl"] = str(request.url.with_path(path).with_query(None))
        elif self.status_url_mode == "relative":
            body["statusUrl"] = path

        self.logger.info(f"Created task {task_id}")
        return web.json_response([body] if self.wrap_submission_in_list else body)

    async def handle_status(self, request):
        task_id = request.match_info["task_id"]
        self.status_calls.append(datetime.now())

        if self.script:
            return await self._scripted(task_id, self.script.pop(0))

        if task_id not in self.tasks:
            return web.json_response({"taskId": task_id, "status": "not_found"})

        if random.random() < self.error_rate:
            self.logger.info("Returning failed status")
            return web.json_response(
                {"taskId": task_id, "status": "failed", "error": "worker crashed"}
            )

        elapsed = (datetime.now() - self.tasks[task_id]).total_seconds()

        if elapsed >= self.completion_time:
            self.logger.info("Returning completed status")
            return web.json_response(
                {
                    "taskId": task_id,
                    "status": "completed",
                    "result": {"task_id": task_id},
                    "duration": round(elapsed, 3),
                }
            )
        else:
            self.logger.info(f"Returning pending status (elapsed: {elapsed:.1f}s)")
            return web.json_response({"taskId": task_id, "status": "pending"})

    async def _scripted(self, task_id: str, entry: Any) -> web.StreamResponse:
        if isinstance(entry, tuple):
            delay, entry = entry
            await asyncio.sleep(delay)
        if isinstance(entry, web.StreamResponse):
            return entry
        if isinstance(entry, int):
            return web.json_response({"error": f"HTTP {entry}"}, status=entry)
        if isinstance(entry, dict):
            return web.json_response(entry)
        return web.json_response({"taskId": task_id, "status": entry})

    async def start(self, port: int = 0) -> int:
        """Starts serving on the loopback interface and returns the bound port"""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "127.0.0.1", port)
        await site.start()
        port = self.runner.addresses[0][1]
        self.logger.info(f"Server started on port {port}")
        return port

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
