"""
Unit tests for request models and attribute diffs.
"""

import pytest

from xolo_library.engines.diff import Change
from xolo_library.engines.diff import apply_changes
from xolo_library.engines.diff import changed
from xolo_library.engines.diff import diff_attributes
from xolo_library.exceptions import ValidationError
from xolo_library.models.titles import Title
from xolo_library.models.titles import TitleUpdate
from xolo_library.models.versions import Version
from xolo_library.models.versions import VersionUpdate


@pytest.fixture
def title() -> Title:
    return Title(
        title="foo",
        display_name="Foo",
        app_name="Foo.app",
        app_bundle_id="com.example.foo",
        release_groups=["b", "a"],
        version_order=["2.0", "1.0"],
    )


@pytest.mark.unit
class TestUpdateModels:
    """Test which fields an update request carries."""

    def test_only_sent_fields(self) -> None:
        """Test only fields present in the request become changes."""
        update = TitleUpdate.model_validate({"publisher": "Example Inc"})
        assert update.changes() == {"publisher": "Example Inc"}

    def test_null_clears_lists_and_flags(self) -> None:
        """Test null resets lists to empty and self_service to False."""
        update = TitleUpdate.model_validate({"release_groups": None, "self_service": None})

        assert update.changes() == {"release_groups": [], "self_service": False}

    @pytest.mark.parametrize("field", ["display_name", "description", "publisher", "contact_email"])
    def test_null_clears_text(self, field: str) -> None:
        """Test null clears a text attribute to the empty string."""
        update = TitleUpdate.model_validate({field: None})

        assert update.changes() == {field: ""}

    def test_version_update_restores_defaults(self) -> None:
        """Test null kill apps and flags fall back to the version defaults."""
        update = VersionUpdate.model_validate({"killapps": None, "standalone": None})
        assert update.changes() == {"killapps": [], "standalone": True}


@pytest.mark.unit
class TestTitleModel:
    """Test derived title properties."""

    def test_latest_version(self, title: Title) -> None:
        """Test the newest version is first in version_order."""
        assert title.latest_version == "2.0"
        assert Title(title="bar", display_name="Bar").latest_version is None

    def test_release_to_all(self, title: Title) -> None:
        """Test the 'all' release group."""
        assert title.release_to_all is False
        assert title.model_copy(update={"release_groups": ["all"]}).release_to_all is True


@pytest.mark.unit
class TestDiff:
    """Test attribute diffs."""

    def test_lists_compare_as_sets(self, title: Title) -> None:
        """Test reordered lists aren't a change."""
        assert diff_attributes(title, {"release_groups": ["a", "b"]}) == []

    def test_empty_and_none_are_same(self, title: Title) -> None:
        """Test an empty string matches None."""
        assert diff_attributes(title, {"version_script": ""}) == []

    def test_changes_in_request_order(self, title: Title) -> None:
        """Test changes come back in the order they were sent."""
        changes = diff_attributes(title, {"publisher": "Example Inc", "display_name": "Foo Pro"})

        assert changes == [
            Change("publisher", "", "Example Inc"),
            Change("display_name", "Foo", "Foo Pro"),
        ]

    def test_apply_changes_returns_copy(self, title: Title) -> None:
        """Test applying changes leaves the original untouched."""
        updated = apply_changes(title, [Change("publisher", "", "Example Inc")])

        assert updated.publisher == "Example Inc"
        assert title.publisher == ""
        assert updated.version_order == title.version_order

    def test_apply_changes_revalidates(self) -> None:
        """Test the copy is rebuilt from the model, so enums are parsed."""
        version = Version(title="foo", version="1.0")
        updated = apply_changes(version, [Change("status", "pilot", "released")])
        assert updated.status.value == "released"

    def test_apply_changes_rejects_bad_values(self, title: Title) -> None:
        """Test a value that doesn't fit its attribute raises a 400 ValidationError."""
        with pytest.raises(ValidationError, match="display_name"):
            apply_changes(title, [Change("display_name", "Foo", None)])

    def test_changed(self) -> None:
        """Test checking changes for named attributes."""
        changes = [Change("min_os", None, "13")]

        assert changed(changes, "max_os", "min_os") is True
        assert changed(changes, "killapps") is False