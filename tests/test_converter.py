"""Tests for the converter core."""

from pathlib import Path

import pytest
from PIL import Image, ImageStat

import converter
from converter import (
    FALLBACK_QUALITY,
    ConversionSettings,
    ConversionStatus,
    EncodeError,
    ImageTask,
    SearchResult,
    convert_image,
    fit_within,
    heif_support_warning,
    probe_size,
    search_quality,
)

from conftest import noise_image


def task_for(path: Path, out_dir: Path, max_size_bytes=7_864_320, max_dimension=7500) -> ImageTask:
    return ImageTask(path, out_dir / (path.stem + '.jpg'), max_size_bytes, max_dimension)


def linear_probe(calls=None):
    """Fake encoder whose size is 1000 bytes per quality point."""
    def probe(img, quality):
        if calls is not None:
            calls.append(quality)
        return quality * 1000
    return probe


# -----------------------------------------------------------------------------
# Settings and tasks
# -----------------------------------------------------------------------------

def test_settings_defaults_and_budget():
    settings = ConversionSettings()
    assert settings.max_size_mb == 7.5
    assert settings.max_dimension == 7500
    assert settings.max_size_bytes == 7_864_320
    assert ConversionSettings(max_size_mb=0.01).max_size_bytes == 10485


@pytest.mark.parametrize("size_mb, dimension", [
    (0, 100), (-1.0, 100), (float('inf'), 100), (float('nan'), 100), (1.0, 0), (1.0, -5),
])
def test_settings_reject_invalid_limits(size_mb, dimension):
    with pytest.raises(ValueError):
        ConversionSettings(max_size_mb=size_mb, max_dimension=dimension)


def test_task_output_name_is_stem_with_jpg(tmp_path):
    settings = ConversionSettings(max_size_mb=2, max_dimension=1000)
    task = ImageTask.from_source(Path('/photos/IMG_0001.CR2'), tmp_path, settings)
    assert task.output_path == tmp_path / 'IMG_0001.jpg'
    assert task.max_size_bytes == 2 * 1024 * 1024
    assert task.max_dimension == 1000


def test_same_stem_maps_to_same_output(tmp_path):
    settings = ConversionSettings()
    first = ImageTask.from_source(Path('photo.cr2'), tmp_path, settings)
    second = ImageTask.from_source(Path('photo.jpg'), tmp_path, settings)
    assert first.output_path == second.output_path


# -----------------------------------------------------------------------------
# Quality search
# -----------------------------------------------------------------------------

def test_search_stays_in_high_range_when_it_fits():
    calls = []
    result = search_quality(None, 95_500, probe=linear_probe(calls))
    assert result == SearchResult(quality=95, size=95_000, found=True)
    assert all(91 <= q <= 100 for q in calls)


def test_search_descends_to_acceptable_range():
    calls = []
    result = search_quality(None, 70_000, probe=linear_probe(calls))
    assert result == SearchResult(quality=70, size=70_000, found=True)
    assert any(q <= 90 for q in calls)


def test_search_finds_highest_fitting_quality_for_every_budget():
    candidates = list(range(91, 101)) + list(range(50, 91))
    for budget in range(0, 110_001, 250):
        fitting = [q for q in candidates if q * 1000 <= budget]
        result = search_quality(None, budget, probe=linear_probe())
        if fitting:
            assert result.found
            assert result.quality == max(fitting)
            assert result.size == result.quality * 1000
        else:
            assert result == SearchResult(FALLBACK_QUALITY, FALLBACK_QUALITY * 1000, False)


def test_search_fallback_reports_size_at_lowest_quality():
    calls = []
    result = search_quality(None, 10, probe=linear_probe(calls))
    assert result == SearchResult(quality=50, size=50_000, found=False)
    assert calls[-1] == 50
    assert min(calls) == 50


def test_search_propagates_probe_errors():
    def broken_probe(img, quality):
        raise EncodeError("disk full")

    with pytest.raises(EncodeError):
        search_quality(None, 1000, probe=broken_probe)


def test_search_with_real_encoder_fits_budget():
    img = noise_image((120, 90))
    budget = probe_size(img, 80)
    result = search_quality(img, budget)
    assert result.found
    assert 50 <= result.quality <= 100
    assert probe_size(img, result.quality) == result.size <= budget


# -----------------------------------------------------------------------------
# Probe encoder
# -----------------------------------------------------------------------------

def test_probe_size_leaves_image_untouched():
    img = noise_image((80, 60))
    pixels = img.tobytes()
    info = dict(img.info)

    first = probe_size(img, 75)
    second = probe_size(img, 75)

    assert first == second > 0
    assert img.tobytes() == pixels
    assert img.info == info


def test_probe_size_shrinks_with_quality():
    img = noise_image((80, 60))
    assert probe_size(img, 50) < probe_size(img, 100)


def test_probe_size_wraps_encoder_failure():
    img = Image.new('RGBA', (10, 10))
    with pytest.raises(EncodeError):
        probe_size(img, 90)


# -----------------------------------------------------------------------------
# Resizing
# -----------------------------------------------------------------------------

def test_fit_within_landscape():
    resized = fit_within(Image.new('RGB', (300, 200)), 100)
    assert resized.size == (100, 67)


def test_fit_within_portrait():
    resized = fit_within(Image.new('RGB', (200, 600)), 300)
    assert resized.size == (100, 300)


def test_fit_within_leaves_small_images_alone():
    img = Image.new('RGB', (100, 50))
    assert fit_within(img, 100) is img


# -----------------------------------------------------------------------------
# Pipeline
# -----------------------------------------------------------------------------

def test_fitting_jpeg_is_copied_verbatim(make_image, out_dir):
    source = make_image('small.jpg', quality=85)
    result = convert_image(task_for(source, out_dir))

    assert result.status is ConversionStatus.COPIED
    assert result.success
    assert result.message is None
    assert (out_dir / 'small.jpg').read_bytes() == source.read_bytes()


def test_uppercase_extension_maps_to_lowercase_jpg(make_image, out_dir):
    source = make_image('SHOT.JPEG', fmt='JPEG')
    result = convert_image(task_for(source, out_dir))
    assert result.dest_path == out_dir / 'SHOT.jpg'
    assert (out_dir / 'SHOT.jpg').exists()


def test_oversized_jpeg_is_resized_and_reencoded(make_image, out_dir):
    source = make_image('wide.jpg', size=(300, 200), noise=True)
    result = convert_image(task_for(source, out_dir, max_dimension=100))

    assert result.status is ConversionStatus.CONVERTED
    assert 91 <= result.quality <= 100
    with Image.open(out_dir / 'wide.jpg') as out:
        assert out.format == 'JPEG'
        assert out.size == (100, 67)
    assert abs(100 / 67 - 300 / 200) < 0.02


def test_jpeg_over_budget_is_reencoded_under_budget(make_image, out_dir):
    source = make_image('heavy.jpg', size=(200, 150), noise=True, quality=100)
    budget = int(source.stat().st_size * 0.6)
    result = convert_image(task_for(source, out_dir, max_size_bytes=budget))

    assert result.status is ConversionStatus.CONVERTED
    assert result.converted_size == (out_dir / 'heavy.jpg').stat().st_size
    assert result.converted_size <= budget
    with Image.open(out_dir / 'heavy.jpg') as out:
        assert out.size == (200, 150)


def test_png_is_converted_to_jpeg(make_image, out_dir):
    source = make_image('chart.png')
    result = convert_image(task_for(source, out_dir))

    assert result.status is ConversionStatus.CONVERTED
    with Image.open(out_dir / 'chart.jpg') as out:
        assert out.format == 'JPEG'
        assert out.size == (64, 48)


def test_transparent_png_is_flattened(make_image, out_dir):
    rgba = noise_image((40, 30), mode='RGBA')
    source = make_image('logo.png', img=rgba)
    result = convert_image(task_for(source, out_dir))

    assert result.status is ConversionStatus.CONVERTED
    with Image.open(out_dir / 'logo.jpg') as out:
        assert out.mode == 'RGB'


def test_exif_orientation_is_applied(make_image, out_dir):
    exif = Image.Exif()
    exif[0x0112] = 6  # rotated 90 degrees clockwise
    source = make_image('rotated.jpg', size=(400, 200), exif=exif.tobytes())
    result = convert_image(task_for(source, out_dir, max_dimension=100))

    assert result.status is ConversionStatus.CONVERTED
    with Image.open(out_dir / 'rotated.jpg') as out:
        assert out.size == (50, 100)


def test_unreachable_budget_warns_at_lowest_quality(make_image, out_dir):
    source = make_image('noisy.png', size=(200, 150), noise=True)
    result = convert_image(task_for(source, out_dir, max_size_bytes=2000))

    assert result.status is ConversionStatus.CONVERTED_WITH_WARNING
    assert result.success
    assert result.quality == 50
    assert result.converted_size > 2000
    assert result.converted_size == (out_dir / 'noisy.jpg').stat().st_size
    assert result.message.startswith("[WARN] Best achievable quality for noisy.png is 50")


def test_conversion_size_is_stable(make_image, out_dir):
    source = make_image('repeat.png', size=(160, 120), noise=True)
    task = task_for(source, out_dir, max_size_bytes=20_000)

    first = convert_image(task)
    second = convert_image(task)
    assert first.converted_size == second.converted_size
    assert first.quality == second.quality


def test_truncated_file_fails_without_output(make_image, out_dir):
    source = make_image('cut.jpg', size=(200, 150), noise=True)
    data = source.read_bytes()
    source.write_bytes(data[:len(data) // 2])
    (out_dir / 'cut.jpg').write_bytes(b'stale')

    result = convert_image(task_for(source, out_dir))

    assert result.status is ConversionStatus.FAILED
    assert not result.success
    assert "Cannot decode" in result.error
    assert result.message.startswith("[ERROR] Processing cut.jpg:")
    assert not (out_dir / 'cut.jpg').exists()


def test_garbage_file_fails(tmp_path, out_dir):
    source = tmp_path / 'notes.png'
    source.write_bytes(b'definitely not an image')
    result = convert_image(task_for(source, out_dir))

    assert result.status is ConversionStatus.FAILED
    assert not (out_dir / 'notes.jpg').exists()


def test_missing_source_fails(tmp_path, out_dir):
    result = convert_image(task_for(tmp_path / 'gone.jpg', out_dir))
    assert result.status is ConversionStatus.FAILED


def test_partial_output_is_removed_on_write_failure(make_image, out_dir, monkeypatch):
    source = make_image('photo.png')

    def failing_write(img, quality, dest_path):
        dest_path.write_bytes(b'\xff\xd8partial')
        raise EncodeError("disk full")

    monkeypatch.setattr(converter, 'write_jpeg', failing_write)
    result = convert_image(task_for(source, out_dir))

    assert result.status is ConversionStatus.FAILED
    assert result.error == "disk full"
    assert not (out_dir / 'photo.jpg').exists()


def test_unexpected_error_is_contained(make_image, out_dir, monkeypatch):
    source = make_image('photo.png')

    def exploding_search(img, budget):
        raise RuntimeError("boom")

    monkeypatch.setattr(converter, 'search_quality', exploding_search)
    result = convert_image(task_for(source, out_dir))

    assert result.status is ConversionStatus.FAILED
    assert result.error == "boom"
    assert result.original_size == source.stat().st_size
    assert not (out_dir / 'photo.jpg').exists()


def test_fitting_jpeg_in_its_own_folder_is_kept(make_image):
    source = make_image('photo.jpg', fmt='JPEG')
    original = source.read_bytes()

    result = convert_image(ImageTask.from_source(source, source.parent, ConversionSettings()))

    assert result.status is ConversionStatus.COPIED
    assert result.dest_path == source
    assert source.read_bytes() == original


def test_failure_in_own_folder_never_deletes_source(make_image, monkeypatch):
    source = make_image('wide.jpg', size=(300, 200), noise=True)
    original = source.read_bytes()

    def failing_search(img, budget):
        raise EncodeError("encoder gave up")

    monkeypatch.setattr(converter, 'search_quality', failing_search)
    result = convert_image(task_for(source, source.parent, max_dimension=100))

    assert result.status is ConversionStatus.FAILED
    assert source.read_bytes() == original


def test_palette_image_is_resampled_smoothly(tmp_path, out_dir):
    # One-pixel checkerboard: smooth resampling averages it to mid grey,
    # nearest-neighbour picks a single colour for the whole image
    checker = Image.new('P', (400, 400))
    checker.putpalette([0, 0, 0, 255, 255, 255])
    checker.putdata([(x + y) % 2 for y in range(400) for x in range(400)])
    source = tmp_path / 'checker.gif'
    checker.save(source)

    result = convert_image(task_for(source, out_dir, max_dimension=40))

    assert result.status is ConversionStatus.CONVERTED
    with Image.open(out_dir / 'checker.jpg') as out:
        assert out.size == (40, 40)
        mean = ImageStat.Stat(out.convert('L')).mean[0]
    assert 64 < mean < 192


def test_heif_warning_only_when_plugin_missing(monkeypatch):
    files = [Path('a.HEIC'), Path('b.heif'), Path('c.jpg')]

    monkeypatch.setattr(converter, 'HEIC_AVAILABLE', True)
    assert heif_support_warning(files) is None

    monkeypatch.setattr(converter, 'HEIC_AVAILABLE', False)
    assert heif_support_warning(files).startswith("[WARN] pillow-heif is not installed, 2 HEIC/HEIF")
    assert heif_support_warning([Path('c.jpg')]) is None
