"""Name lists from the remote services.

The same lists back the creation-time validation of groups and categories,
so clients can offer choices that will pass it.
"""

from fastapi import APIRouter

from ..dependencies import ServicesDep

router = APIRouter(tags=["lookups"])


@router.get("/jamf/computer-group-names", response_model=list[str])
def computer_group_names(services: ServicesDep) -> list[str]:
    return services.jamf.computer_group_names()


@router.get("/jamf/category-names", response_model=list[str])
def category_names(services: ServicesDep) -> list[str]:
    return services.jamf.category_names()


@router.get("/jamf/package-names", response_model=list[str])
def package_names(services: ServicesDep) -> list[str]:
    return services.jamf.package_names()


@router.get("/title-editor/titles", response_model=list[str])
def title_editor_titles(services: ServicesDep) -> list[str]:
    """Ids of every title on the Title Editor, including ones xolo doesn't manage."""
    return services.ted.title_ids()
