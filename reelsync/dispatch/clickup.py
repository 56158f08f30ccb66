"""
ClickUp API client

Finds (or creates) the ClickUp task that tracks a character and records an
extracted fact on it as a comment plus a task-type checklist. When built with
a dispatcher, every HTTP request is a separate dispatch task: the rate window
counts API calls, and a throttled request is retried alone.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from reelsync.config import settings
from reelsync.dispatch.rate_limit import RateLimitedDispatcher
from reelsync.errors import DispatchError, ThrottledError
from reelsync.schemas.extraction import ExtractedFact
from reelsync.utils.logging import get_logger

logger = get_logger(__name__, category="clickup")

DEFAULT_LIST_NAME = "Characters"
PROJECT_FOLDER_NAME = "Prj"

CHECKLIST_TEMPLATES: Dict[str, List[str]] = {
    "blocking": ["head", "body", "facial expressions"],
    "animation": ["walk cycle", "run cycle", "hind legs"],
    "rigging": ["skeleton", "controls", "weights"],
}
GENERIC_CHECKLIST = ["general", "review"]


def checklist_items_for(task_type: str) -> List[str]:
    """Checklist item names for a task type (generic list when unknown)."""
    return list(CHECKLIST_TEMPLATES.get(task_type.strip().lower(), GENERIC_CHECKLIST))


def build_comment(fact: ExtractedFact) -> str:
    text = (
        f"Update from Zoom meeting: {fact.task} required for character "
        f"{fact.character}."
    )
    if fact.context:
        text += f" Context: {fact.context}"
    return text


class ClickUpClient:
    """Thin async wrapper over the ClickUp v2 REST API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        dispatcher: Optional[RateLimitedDispatcher] = None,
    ):
        self.api_key = api_key or settings.clickup_api_key
        self.base_url = (base_url or settings.clickup_api_base).rstrip("/")
        self.dispatcher = dispatcher

        if not self.api_key:
            logger.warning("CLICKUP_API_KEY not set - ClickUp updates will fail")

        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.http_timeout_seconds, connect=10.0)
        )

        # Resolved once, reused for every fact
        self._space_id: Optional[str] = None

    async def close(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        if not self.api_key:
            raise DispatchError("ClickUp API key is not configured")
        if self.dispatcher is None:
            return await self._send(method, path, **kwargs)
        return await self.dispatcher.execute(
            lambda: self._send(method, path, **kwargs), label=f"ClickUp {method} {path}"
        )

    async def _send(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        headers = {"Authorization": self.api_key}
        url = f"{self.base_url}{path}"
        try:
            response = await self.http_client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException:
            # Left as-is so the dispatcher treats it as retryable
            raise
        except httpx.RequestError as exc:
            raise DispatchError(f"ClickUp request {method} {path} failed: {exc}") from exc

        if response.status_code == 429:
            raise ThrottledError(f"ClickUp rate limit exceeded on {method} {path}")
        if response.status_code >= 400:
            logger.error(
                "ClickUp %s %s failed: %s - %s",
                method,
                path,
                response.status_code,
                response.text[:200],
            )
            raise DispatchError(
                f"ClickUp {method} {path} returned {response.status_code}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise DispatchError(f"Invalid JSON from ClickUp {method} {path}") from exc

    async def _get_collection(self, path: str, key: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", path)
        items = data.get(key)
        if not isinstance(items, list):
            raise DispatchError(f"Invalid response format from ClickUp API ({path})")
        return items

    async def get_teams(self) -> List[Dict[str, Any]]:
        return await self._get_collection("/team", "teams")

    async def get_spaces(self, team_id: str) -> List[Dict[str, Any]]:
        return await self._get_collection(f"/team/{team_id}/space", "spaces")

    async def get_folders(self, space_id: str) -> List[Dict[str, Any]]:
        return await self._get_collection(f"/space/{space_id}/folder", "folders")

    async def get_lists_in_folder(self, folder_id: str) -> List[Dict[str, Any]]:
        return await self._get_collection(f"/folder/{folder_id}/list", "lists")

    async def get_lists(self, space_id: str) -> List[Dict[str, Any]]:
        return await self._get_collection(f"/space/{space_id}/list", "lists")

    async def get_tasks(self, list_id: str) -> List[Dict[str, Any]]:
        return await self._get_collection(f"/list/{list_id}/task", "tasks")

    async def create_list(self, space_id: str, name: str) -> str:
        data = await self._request("POST", f"/space/{space_id}/list", json={"name": name})
        list_id = data.get("id")
        if not list_id:
            raise DispatchError("ClickUp did not return an id for the new list")
        logger.info("Created ClickUp list %s (%s)", name, list_id)
        return str(list_id)

    async def create_task(self, list_id: str, character: str) -> str:
        data = await self._request(
            "POST",
            f"/list/{list_id}/task",
            json={
                "name": f"{character} character",
                "description": f"Task for character {character} created automatically",
            },
        )
        task_id = data.get("id")
        if not task_id:
            raise DispatchError("ClickUp did not return an id for the new task")
        logger.info("Created ClickUp task for %s: %s", character, task_id)
        return str(task_id)

    async def add_comment(self, task_id: str, text: str) -> None:
        await self._request("POST", f"/task/{task_id}/comment", json={"comment_text": text})
        logger.info("Added comment to ClickUp task %s", task_id)

    async def create_checklist(self, task_id: str, name: str, items: List[str]) -> str:
        data = await self._request("POST", f"/task/{task_id}/checklist", json={"name": name})
        checklist_id = (data.get("checklist") or {}).get("id")
        if not checklist_id:
            raise DispatchError("ClickUp did not return an id for the new checklist")
        for item in items:
            await self._request(
                "POST",
                f"/checklist/{checklist_id}/checklist_item",
                json={"name": item},
            )
        logger.info("Created checklist '%s' with %s item(s) on task %s", name, len(items), task_id)
        return str(checklist_id)

    async def resolve_space(self) -> str:
        """Space holding character tasks: one named after characters, else the first."""
        if self._space_id:
            return self._space_id

        teams = await self.get_teams()
        if not teams:
            raise DispatchError("No teams found in ClickUp")
        spaces = await self.get_spaces(str(teams[0]["id"]))
        if not spaces:
            raise DispatchError("No spaces found in ClickUp")

        chosen = spaces[0]
        for space in spaces:
            name = str(space.get("name", "")).lower()
            if "character" in name or "personaje" in name:
                chosen = space
                break
        self._space_id = str(chosen["id"])
        logger.info("Using ClickUp space %s (%s)", chosen.get("name"), self._space_id)
        return self._space_id

    async def _search_lists(self, lists: List[Dict[str, Any]], character: str) -> Optional[str]:
        needle = character.lower()
        for item in lists:
            try:
                tasks = await self.get_tasks(str(item["id"]))
            except DispatchError as exc:
                logger.warning("Error searching ClickUp list %s: %s", item.get("id"), exc)
                continue
            for task in tasks:
                if needle in str(task.get("name", "")).lower():
                    logger.info(
                        "Found task for %s in list %s: %s",
                        character,
                        item.get("name"),
                        task.get("id"),
                    )
                    return str(task["id"])
        return None

    async def find_task_for_character(self, space_id: str, character: str) -> Optional[str]:
        """Look in the project folder first, then in the space's own lists."""
        folders = await self.get_folders(space_id)
        project_folder = next(
            (
                f
                for f in folders
                if str(f.get("name", "")).lower() == PROJECT_FOLDER_NAME.lower()
                or PROJECT_FOLDER_NAME.lower() in str(f.get("name", "")).lower()
            ),
            None,
        )
        if project_folder:
            lists = await self.get_lists_in_folder(str(project_folder["id"]))
            task_id = await self._search_lists(lists, character)
            if task_id:
                return task_id

        task_id = await self._search_lists(await self.get_lists(space_id), character)
        if not task_id:
            logger.info("No ClickUp task found for character %s", character)
        return task_id

    async def find_or_create_task(self, character: str) -> str:
        space_id = await self.resolve_space()
        task_id = await self.find_task_for_character(space_id, character)
        if task_id:
            return task_id

        lists = await self.get_lists(space_id)
        if lists:
            list_id = str(lists[0]["id"])
        else:
            list_id = await self.create_list(space_id, DEFAULT_LIST_NAME)
        return await self.create_task(list_id, character)

    async def apply_fact(self, fact: ExtractedFact) -> str:
        """Record one fact on its character's task. Returns the task id."""
        task_id = await self.find_or_create_task(fact.character)
        await self.add_comment(task_id, build_comment(fact))
        await self.create_checklist(
            task_id,
            f"{fact.task} for {fact.character}",
            checklist_items_for(fact.task),
        )
        logger.info("ClickUp task %s updated for %s/%s", task_id, fact.character, fact.task)
        return task_id
