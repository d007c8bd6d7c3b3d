import os
import sys

import numpy as np
import nibabel as nib
import pytest
from nibabel.streamlines import Field, Tractogram, save as save_trk
from nibabel.streamlines.trk import MAX_NB_NAMED_SCALARS_PER_POINT

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from fiberprocess.fibers import CoordinateSpace, Fiber, FiberBundle
from fiberprocess.fields import LabelVolume
from fiberprocess.grid import VolumeGeometry
from fiberprocess.io import (
    load_fiber_bundle,
    save_fiber_bundle,
    load_deformation_field,
    load_tensor_volume,
    save_label_volume,
    hfield_to_displacement,
    per_point_storage_error,
)
from fiberprocess.validation import FiberIOError, ValidationError


def _trk_header(affine, dims=(10, 10, 10)):
    return {
        Field.VOXEL_TO_RASMM: affine.astype(np.float32),
        Field.DIMENSIONS: np.array(dims, dtype=np.int16),
        Field.VOXEL_SIZES: np.sqrt(np.sum(affine[:3, :3] ** 2, axis=0)).astype(np.float32),
    }


def _create_trk(tmpdir, streamlines, affine, data_per_point=None, name="fibers.trk"):
    trk_path = str(tmpdir.join(name))
    tractogram = Tractogram(streamlines, data_per_point=data_per_point, affine_to_rasmm=np.eye(4))
    save_trk(tractogram, trk_path, header=_trk_header(affine))
    return trk_path


class TestFiberIO:
    """Reading and writing fiber bundles through nibabel"""

    def setup_method(self):
        self.affine = np.diag([2.0, 2.0, 2.0, 1.0])
        self.streamlines = [
            np.array([[2.0, 4.0, 6.0], [4.0, 4.0, 6.0]], dtype=np.float32),
            np.array([[0.0, 0.0, 0.0], [2.0, 2.0, 2.0], [4.0, 4.0, 4.0]], dtype=np.float32),
        ]

    def test_load_converts_to_index_space(self, tmpdir):
        trk_path = _create_trk(tmpdir, self.streamlines, self.affine)
        bundle = load_fiber_bundle(trk_path)

        assert bundle.space is CoordinateSpace.INDEX
        np.testing.assert_allclose(bundle.affine, self.affine)
        assert len(bundle) == 2
        assert [f.id for f in bundle.fibers] == [1, 2]
        np.testing.assert_allclose(bundle.fibers[0].points, [[1, 2, 3], [2, 2, 3]], atol=1e-5)
        np.testing.assert_allclose(bundle.to_world(bundle.fibers[0].points), self.streamlines[0], atol=1e-5)
        assert bundle.spacing == pytest.approx((2.0, 2.0, 2.0))

    def test_load_maps_per_point_data(self, tmpdir):
        data_per_point = {
            "tensor": [np.ones((2, 6), dtype=np.float32), np.ones((3, 6), dtype=np.float32)],
            "fa": [np.full((2, 1), 0.5, dtype=np.float32), np.full((3, 1), 0.25, dtype=np.float32)],
        }
        trk_path = _create_trk(tmpdir, self.streamlines, self.affine, data_per_point)
        bundle = load_fiber_bundle(trk_path)

        fiber = bundle.fibers[1]
        assert fiber.tensors.shape == (3, 6)
        np.testing.assert_allclose(fiber.fields["fa"], 0.25)

    def test_save_world_bundle_roundtrip(self, tmpdir):
        bundle = FiberBundle(affine=np.eye(4), space=CoordinateSpace.WORLD, header=_trk_header(self.affine))
        bundle.add_fiber(Fiber(
            id=1,
            points=[[1.0, 2.0, 3.0], [3.0, 2.0, 1.0]],
            radii=[0.5, 0.5],
            tensors=np.tile([1, 0, 0, 1, 0, 4], (2, 1)),
            fields={"fa": [0.7, 0.7], "md": [2.0, 2.0]},
        ))
        out_path = str(tmpdir.join("out.trk"))
        save_fiber_bundle(bundle, out_path)

        loaded = nib.streamlines.load(out_path)
        np.testing.assert_allclose(loaded.streamlines[0], [[1, 2, 3], [3, 2, 1]], atol=1e-5)
        assert set(loaded.tractogram.data_per_point.keys()) == {"tensor", "radius", "fa", "md"}
        np.testing.assert_allclose(loaded.header[Field.VOXEL_TO_RASMM], self.affine)

        reloaded = load_fiber_bundle(out_path)
        np.testing.assert_allclose(reloaded.fibers[0].tensors[0], [1, 0, 0, 1, 0, 4])
        np.testing.assert_allclose(reloaded.fibers[0].radii, 0.5)

    def test_save_index_bundle_writes_rasmm(self, tmpdir):
        bundle = FiberBundle(affine=self.affine, space=CoordinateSpace.INDEX)
        bundle.add_fiber(Fiber(id=1, points=[[1.0, 1.0, 1.0], [2.0, 1.0, 1.0]]))
        out_path = str(tmpdir.join("out.tck"))
        save_fiber_bundle(bundle, out_path)

        loaded = nib.streamlines.load(out_path)
        np.testing.assert_allclose(loaded.streamlines[0], [[2, 2, 2], [4, 2, 2]], atol=1e-5)

    def test_missing_file_raises(self, tmpdir):
        with pytest.raises(FiberIOError):
            load_fiber_bundle(str(tmpdir.join("missing.trk")))

    def test_per_point_data_needs_trk(self, tmpdir):
        bundle = FiberBundle(affine=np.eye(4), space=CoordinateSpace.WORLD)
        bundle.add_fiber(Fiber(
            id=1,
            points=[[1.0, 2.0, 3.0], [3.0, 2.0, 1.0]],
            tensors=np.tile([1, 0, 0, 1, 0, 4], (2, 1)),
            fields={"fa": [0.7, 0.7]},
        ))
        out_path = str(tmpdir.join("out.tck"))
        with pytest.raises(FiberIOError, match="per-point data"):
            save_fiber_bundle(bundle, out_path)
        assert not os.path.exists(out_path)

    def test_too_many_per_point_names(self, tmpdir):
        fields = {f"s{i}": [0.0, 1.0] for i in range(MAX_NB_NAMED_SCALARS_PER_POINT + 1)}
        bundle = FiberBundle(affine=np.eye(4), space=CoordinateSpace.WORLD, header=_trk_header(self.affine))
        bundle.add_fiber(Fiber(id=1, points=[[1.0, 2.0, 3.0], [3.0, 2.0, 1.0]], fields=fields))
        out_path = str(tmpdir.join("out.trk"))
        with pytest.raises(FiberIOError, match="at most"):
            save_fiber_bundle(bundle, out_path)
        assert not os.path.exists(out_path)

    def test_per_point_storage_error(self):
        assert per_point_storage_error("out.tck", []) is None
        assert per_point_storage_error("out.TRK", ["tensor", "fa"]) is None
        assert "cannot store" in per_point_storage_error("out.tck", ["fa"])
        names = [f"s{i}" for i in range(MAX_NB_NAMED_SCALARS_PER_POINT)]
        assert per_point_storage_error("out.trk", names) is None
        assert per_point_storage_error("out.trk", names + ["fa"]) is not None


class TestFieldIO:
    """Reading deformation fields and tensor volumes"""

    def setup_method(self):
        self.affine = np.diag([2.0, 2.0, 2.0, 1.0])
        self.affine[:3, 3] = [-4.0, -4.0, -4.0]

    def _save(self, tmpdir, data, name):
        path = str(tmpdir.join(name))
        nib.save(nib.Nifti1Image(data.astype(np.float32), self.affine), path)
        return path

    def test_displacement_field_lps_flip(self, tmpdir):
        data = np.broadcast_to(np.array([1.0, 2.0, 3.0]), (4, 4, 4, 3)).copy()
        path = self._save(tmpdir, data, "warp.nii.gz")

        field = load_deformation_field(path)
        np.testing.assert_allclose(field.data[0, 0, 0], [-1.0, -2.0, 3.0])
        np.testing.assert_allclose(field.geometry.affine, self.affine)

        ras_field = load_deformation_field(path, lps_to_ras=False)
        np.testing.assert_allclose(ras_field.data[0, 0, 0], [1.0, 2.0, 3.0])

    def test_itk_five_dimensional_layout(self, tmpdir):
        data = np.zeros((4, 4, 4, 1, 3))
        data[..., 2] = 5.0
        path = self._save(tmpdir, data, "warp5d.nii.gz")
        field = load_deformation_field(path)
        assert field.data.shape == (4, 4, 4, 3)
        np.testing.assert_allclose(field.data[1, 2, 3], [0.0, 0.0, 5.0])

    def test_hfield_converted_to_displacement(self, tmpdir):
        geometry = VolumeGeometry.from_affine(self.affine, (4, 4, 4))
        grid = np.stack(np.meshgrid(*[np.arange(4)] * 3, indexing='ij'), -1).reshape(-1, 3)
        positions = geometry.continuous_index_to_physical(grid).reshape(4, 4, 4, 3)
        path = self._save(tmpdir, positions + [0.5, 0.0, -1.0], "hfield.nii.gz")

        field = load_deformation_field(path, kind="hfield", lps_to_ras=False)
        np.testing.assert_allclose(field.data[..., 0], 0.5, atol=1e-5)
        np.testing.assert_allclose(field.data[..., 2], -1.0, atol=1e-5)
        np.testing.assert_allclose(hfield_to_displacement(positions, geometry), 0.0)

    def test_wrong_component_count(self, tmpdir):
        path = self._save(tmpdir, np.zeros((4, 4, 4, 2)), "bad.nii.gz")
        with pytest.raises(ValidationError):
            load_deformation_field(path)

    def test_unknown_kind(self, tmpdir):
        path = self._save(tmpdir, np.zeros((4, 4, 4, 3)), "warp.nii.gz")
        with pytest.raises(ValueError):
            load_deformation_field(path, kind="velocity")

    def test_tensor_lower_order(self, tmpdir):
        # xx, xy, yy, xz, yz, zz on disk
        data = np.broadcast_to(np.array([1.0, 2.0, 3.0, 4.0, 5.0, 6.0]), (4, 4, 4, 6)).copy()
        path = self._save(tmpdir, data, "dti.nii.gz")

        tensors = load_tensor_volume(path)
        np.testing.assert_allclose(tensors.data[0, 0, 0], [1.0, 2.0, 4.0, 3.0, 5.0, 6.0])

        upper = load_tensor_volume(path, component_order="upper")
        np.testing.assert_allclose(upper.data[0, 0, 0], [1.0, 2.0, 3.0, 4.0, 5.0, 6.0])


def test_save_label_volume(tmpdir):
    affine = np.diag([1.5, 1.5, 1.5, 1.0])
    volume = LabelVolume(VolumeGeometry.from_affine(affine, (3, 4, 5)))
    volume.assign((1, 2, 3), 7)
    out_path = str(tmpdir.join("labels.nii.gz"))
    save_label_volume(volume, out_path)

    img = nib.load(out_path)
    assert img.shape == (3, 4, 5)
    assert img.get_data_dtype() == np.int32
    np.testing.assert_allclose(img.affine, affine)
    assert np.asarray(img.dataobj)[1, 2, 3] == 7
