"""Tests for the YOLO archive exporter."""
import json
import zipfile

import pytest
import yaml

from drone_dataset_generator import (
    DatasetExporter,
    DatasetItem,
    DroneDatasetPipeline,
    GenerationParameters,
    ItemStatus,
    NormalizedBoundingBox,
)


@pytest.fixture
def box():
    return NormalizedBoundingBox(x_center=0.5, y_center=0.5, width=0.25, height=0.5)


@pytest.fixture
def make_item(resolved_params, make_image, box):
    def _make(item_id, status=ItemStatus.COMPLETED, with_box=True, with_image=True):
        return DatasetItem(
            id=item_id,
            parameters=resolved_params,
            status=status,
            image=make_image(64, 48) if with_image else None,
            bbox=box if with_box else None,
        )
    return _make


class TestBuildDataset:

    def test_no_completed_items_is_a_noop(self, tmp_path, make_item, test_logger):
        exporter = DatasetExporter(logger=test_logger)
        items = [
            make_item("img_1_0", status=ItemStatus.FAILED, with_box=False),
            make_item("img_1_1", status=ItemStatus.DETECTING, with_box=False),
        ]

        result = exporter.build_dataset(items, 0, "car", tmp_path / "out" / "dataset.zip")

        assert result is None
        assert list(tmp_path.iterdir()) == []

    def test_empty_collection_is_a_noop(self, tmp_path, test_logger):
        result = DatasetExporter(logger=test_logger).build_dataset([], 0, "car", tmp_path / "dataset.zip")

        assert result is None
        assert list(tmp_path.iterdir()) == []

    def test_archive_layout(self, tmp_path, make_item, test_logger):
        items = [
            make_item("img_1_0"),
            make_item("img_1_1", status=ItemStatus.FAILED, with_box=False),
            make_item("img_1_2"),
        ]
        output = tmp_path / "dataset.zip"

        result = DatasetExporter(logger=test_logger).build_dataset(items, 2, "car", output)

        assert result == output
        with zipfile.ZipFile(output) as zf:
            assert sorted(zf.namelist()) == [
                "data.yaml",
                "images/img_1_0.jpg",
                "images/img_1_2.jpg",
                "labels/img_1_0.txt",
                "labels/img_1_2.txt",
            ]
            assert zf.read("labels/img_1_0.txt").decode() == "2 0.500000 0.500000 0.250000 0.500000"
            assert zf.read("images/img_1_2.jpg") == items[2].image

    def test_data_yaml_maps_custom_class_id(self, tmp_path, make_item, test_logger):
        output = tmp_path / "dataset.zip"

        DatasetExporter(logger=test_logger).build_dataset([make_item("img_1_0")], 3, "forklift", output)

        with zipfile.ZipFile(output) as zf:
            data = yaml.safe_load(zf.read("data.yaml"))
        assert data == {
            "train": "../train/images",
            "val": "../valid/images",
            "nc": 4,
            "names": {3: "forklift"},
        }

    def test_completed_item_without_box_is_excluded(self, tmp_path, make_item, test_logger):
        output = tmp_path / "dataset.zip"
        items = [make_item("img_1_0"), make_item("img_1_1", with_box=False)]

        DatasetExporter(logger=test_logger).build_dataset(items, 0, "car", output)

        with zipfile.ZipFile(output) as zf:
            names = zf.namelist()
        assert "labels/img_1_1.txt" not in names
        assert "images/img_1_1.jpg" not in names

    def test_only_box_less_completed_items_is_a_noop(self, tmp_path, make_item, test_logger):
        result = DatasetExporter(logger=test_logger).build_dataset(
            [make_item("img_1_0", with_box=False)], 0, "car", tmp_path / "dataset.zip"
        )

        assert result is None
        assert list(tmp_path.iterdir()) == []

    def test_metadata_files_when_enabled(self, tmp_path, make_item, test_logger):
        output = tmp_path / "dataset.zip"

        DatasetExporter(include_metadata=True, logger=test_logger).build_dataset(
            [make_item("img_1_0")], 0, "car", output
        )

        with zipfile.ZipFile(output) as zf:
            metadata = json.loads(zf.read("metadata/img_1_0.json"))
        assert metadata["parameters"]["angle"] == "Top-down (90°)"
        assert metadata["bbox"] == {"x_center": 0.5, "y_center": 0.5, "width": 0.25, "height": 0.5}
        assert metadata["status"] == "completed"

    def test_no_temporary_file_left_behind(self, tmp_path, make_item, test_logger):
        output = tmp_path / "dataset.zip"

        DatasetExporter(logger=test_logger).build_dataset([make_item("img_1_0")], 0, "car", output)

        assert [path.name for path in tmp_path.iterdir()] == ["dataset.zip"]

    @pytest.mark.parametrize("class_id", [-1, 1.5, True])
    def test_invalid_class_id(self, tmp_path, make_item, test_logger, class_id):
        with pytest.raises(ValueError):
            DatasetExporter(logger=test_logger).build_dataset(
                [make_item("img_1_0")], class_id, "car", tmp_path / "dataset.zip"
            )
        assert list(tmp_path.iterdir()) == []

    def test_empty_label(self, tmp_path, make_item, test_logger):
        with pytest.raises(ValueError):
            DatasetExporter(logger=test_logger).build_dataset(
                [make_item("img_1_0")], 0, "  ", tmp_path / "dataset.zip"
            )


class TestPipelineExport:

    @pytest.mark.asyncio
    async def test_export_uses_configured_path(self, pipeline_config, test_logger, fake_client_cls, reference_image):
        pipeline = DroneDatasetPipeline(config=pipeline_config, client=fake_client_cls(), logger=test_logger)
        await pipeline.run(reference_image, GenerationParameters(count=2), "car")

        archive = pipeline.export(0, "car")

        assert archive == pipeline_config.output_path
        with zipfile.ZipFile(archive) as zf:
            labels = [name for name in zf.namelist() if name.startswith("labels/")]
        assert len(labels) == 2

    @pytest.mark.asyncio
    async def test_export_after_all_failed_writes_nothing(
        self, pipeline_config, test_logger, fake_client_cls, reference_image
    ):
        pipeline = DroneDatasetPipeline(
            config=pipeline_config, client=fake_client_cls(fail_synthesis_at={0}), logger=test_logger
        )
        await pipeline.run(reference_image, GenerationParameters(count=1), "car")

        assert pipeline.export(0, "car") is None
        assert not pipeline_config.output_path.exists()
        assert not pipeline_config.output_path.parent.exists()
