from datetime import timedelta

import numpy as np
import pytest

from remet.core.exceptions import DimensionMismatch
from remet.models.gallery import GalleryIndex
from remet.models.identity import FaceSample
from tests.mocks import make_identity


class TestGalleryIndex:
    """Tests for GalleryIndex."""

    def test_dimension_taken_from_first_sample(self, amy):
        gallery = GalleryIndex([amy])
        assert gallery.dimension == 512

    def test_keeps_insertion_order(self, gallery):
        assert [i.identity_id for i in gallery] == ["amy", "ben", "cleo"]

    def test_duplicate_identity_is_rejected(self, gallery, amy):
        with pytest.raises(ValueError):
            gallery.add_identity(amy)

    def test_add_sample_with_wrong_length_raises(self, gallery):
        with pytest.raises(DimensionMismatch) as exc_info:
            gallery.add_sample("amy", FaceSample(embedding=np.ones(128)))

        assert exc_info.value.expected == 512
        assert exc_info.value.actual == 128

    def test_add_identity_with_wrong_length_leaves_gallery_untouched(self, unit_vector_512):
        gallery = GalleryIndex()
        bad = make_identity("Bad", [unit_vector_512, np.ones(128)], identity_id="bad")

        with pytest.raises(DimensionMismatch):
            gallery.add_identity(bad)

        assert len(gallery) == 0
        assert gallery.dimension is None

    def test_add_sample_to_unknown_identity_raises(self, gallery, unit_vector_512):
        with pytest.raises(KeyError):
            gallery.add_sample("nobody", FaceSample(embedding=unit_vector_512))

    def test_remove_identity_drops_its_samples(self, gallery):
        removed = gallery.remove_identity("amy")

        assert removed is not None
        assert "amy" not in gallery
        assert all(i.identity_id != "amy" for i in gallery.matchable())

    def test_remove_sample(self, gallery):
        sample_id = gallery.get("amy").samples[0].sample_id

        assert gallery.remove_sample("amy", sample_id) is True
        assert gallery.remove_sample("amy", sample_id) is False
        assert not gallery.get("amy").has_samples

    def test_matchable_excludes_identities_without_samples(self, gallery):
        assert [i.identity_id for i in gallery.matchable()] == ["amy", "ben"]

    def test_snapshot_does_not_see_later_samples(self, gallery, unit_vector_512):
        """A sample added while a query runs stays out of that query's snapshot."""
        snapshot = gallery.snapshot()
        gallery.add_sample("amy", FaceSample(embedding=unit_vector_512))

        amy_in_snapshot = next(i for i in snapshot if i.identity_id == "amy")
        assert len(amy_in_snapshot.samples) == 1
        assert len(gallery.get("amy").samples) == 2

    def test_sample_embeddings_are_read_only(self, unit_vector_512):
        sample = FaceSample(embedding=unit_vector_512)

        with pytest.raises(ValueError):
            sample.embedding[0] = 1.0

    def test_mark_seen_keeps_latest_time(self, gallery, fixed_now):
        gallery.mark_seen("amy", fixed_now)
        gallery.mark_seen("amy", fixed_now - timedelta(days=1))

        assert gallery.get("amy").last_seen_at == fixed_now

    def test_caller_cannot_bypass_dimension_check(self, amy):
        """Samples appended to the caller's object never reach the gallery."""
        gallery = GalleryIndex([amy])
        amy.samples.append(FaceSample(embedding=np.ones(128)))

        assert len(gallery.get("amy").samples) == 1
        assert all(s.dimension == 512 for i in gallery.snapshot() for s in i.samples)

    def test_get_returns_frozen_copy(self, gallery):
        amy = gallery.get("amy")

        assert isinstance(amy.samples, tuple)
        with pytest.raises(AttributeError):
            amy.samples.append(FaceSample(embedding=np.ones(128)))
        assert gallery.get("nobody") is None

    def test_add_identity_returns_frozen_copy(self, amy):
        stored = GalleryIndex().add_identity(amy)

        assert stored is not amy
        assert isinstance(stored.samples, tuple)
        assert stored.identity_id == "amy"
