from parsha_songs.services.repository import LinkRepository


class VisitCounter:
    def __init__(self, repository: LinkRepository) -> None:
        self._repository = repository

    async def record(self, ip: str | None, user_agent: str | None) -> None:
        await self._repository.record_visit(ip or "unknown", user_agent or "")

    async def stats(self) -> dict[str, int]:
        return await self._repository.get_visit_stats()
