import allure
from click.testing import CliRunner

from image_studio import __version__
from image_studio.main import image_studio

pytestmark = [
    allure.epic("Studio CLI"),
    allure.feature("Packaging"),
]


def test_version():
    assert __version__


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(image_studio, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
