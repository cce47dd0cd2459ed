"""Shared test fixtures and utilities.

Provides pytest fixtures for an isolated state directory, a configured
transaction manager and integrity checker, and a small sample Xcode project
whose manifest can be corrupted in controlled ways.
"""
# pylint: disable=redefined-outer-name
import sys
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from project_guard.checker import IntegrityChecker
from project_guard.config import GuardConfig, set_config
from project_guard.healer import SelfHealer
from project_guard.transactions import TransactionManager


PROJECT_ID = "1A0000000000000000000001"
MAIN_GROUP = "1A0000000000000000000002"
APP_GROUP = "1A0000000000000000000003"
PRODUCTS_GROUP = "1A0000000000000000000004"
APP_DELEGATE_REF = "1A0000000000000000000005"
PRODUCT_REF = "1A0000000000000000000006"
APP_DELEGATE_BUILD_FILE = "1A0000000000000000000007"
SOURCES_PHASE = "1A0000000000000000000008"
TARGET = "1A0000000000000000000009"
PROJECT_CONFIG_LIST = "1A000000000000000000000A"
TARGET_CONFIG_LIST = "1A000000000000000000000B"
PROJECT_DEBUG = "1A000000000000000000000C"
TARGET_DEBUG = "1A000000000000000000000D"
MISSING_REF = "1A000000000000000000000E"
GHOST_ID = "1A00000000000000000000FF"

SAMPLE_MANIFEST = """// !$*UTF8*$!
{
	archiveVersion = 1;
	classes = {
	};
	objectVersion = 56;
	objects = {

/* Begin PBXBuildFile section */
		1A0000000000000000000007 /* AppDelegate.swift in Sources */ = {isa = PBXBuildFile; fileRef = 1A0000000000000000000005 /* AppDelegate.swift */; };
/* End PBXBuildFile section */

/* Begin PBXFileReference section */
		1A0000000000000000000005 /* AppDelegate.swift */ = {isa = PBXFileReference; lastKnownFileType = sourcecode.swift; path = AppDelegate.swift; sourceTree = "<group>"; };
		1A0000000000000000000006 /* MyApp.app */ = {isa = PBXFileReference; explicitFileType = wrapper.application; includeInIndex = 0; path = MyApp.app; sourceTree = BUILT_PRODUCTS_DIR; };
/* End PBXFileReference section */

/* Begin PBXGroup section */
		1A0000000000000000000002 = {
			isa = PBXGroup;
			children = (
				1A0000000000000000000003 /* MyApp */,
				1A0000000000000000000004 /* Products */,
			);
			sourceTree = "<group>";
		};
		1A0000000000000000000003 /* MyApp */ = {
			isa = PBXGroup;
			children = (
				1A0000000000000000000005 /* AppDelegate.swift */,
			);
			path = MyApp;
			sourceTree = "<group>";
		};
		1A0000000000000000000004 /* Products */ = {
			isa = PBXGroup;
			children = (
				1A0000000000000000000006 /* MyApp.app */,
			);
			name = Products;
			sourceTree = "<group>";
		};
/* End PBXGroup section */

/* Begin PBXNativeTarget section */
		1A0000000000000000000009 /* MyApp */ = {
			isa = PBXNativeTarget;
			buildConfigurationList = 1A000000000000000000000B /* Build configuration list for PBXNativeTarget "MyApp" */;
			buildPhases = (
				1A0000000000000000000008 /* Sources */,
			);
			buildRules = (
			);
			dependencies = (
			);
			name = MyApp;
			productName = MyApp;
			productReference = 1A0000000000000000000006 /* MyApp.app */;
			productType = "com.apple.product-type.application";
		};
/* End PBXNativeTarget section */

/* Begin PBXProject section */
		1A0000000000000000000001 /* Project object */ = {
			isa = PBXProject;
			buildConfigurationList = 1A000000000000000000000A /* Build configuration list for PBXProject "MyApp" */;
			compatibilityVersion = "Xcode 14.0";
			developmentRegion = en;
			mainGroup = 1A0000000000000000000002;
			productRefGroup = 1A0000000000000000000004 /* Products */;
			projectDirPath = "";
			projectRoot = "";
			targets = (
				1A0000000000000000000009 /* MyApp */,
			);
		};
/* End PBXProject section */

/* Begin PBXSourcesBuildPhase section */
		1A0000000000000000000008 /* Sources */ = {
			isa = PBXSourcesBuildPhase;
			buildActionMask = 2147483647;
			files = (
				1A0000000000000000000007 /* AppDelegate.swift in Sources */,
			);
			runOnlyForDeploymentPostprocessing = 0;
		};
/* End PBXSourcesBuildPhase section */

/* Begin XCBuildConfiguration section */
		1A000000000000000000000C /* Debug */ = {
			isa = XCBuildConfiguration;
			buildSettings = {
				SDKROOT = iphoneos;
			};
			name = Debug;
		};
		1A000000000000000000000D /* Debug */ = {
			isa = XCBuildConfiguration;
			buildSettings = {
				PRODUCT_NAME = "$(TARGET_NAME)";
			};
			name = Debug;
		};
/* End XCBuildConfiguration section */

/* Begin XCConfigurationList section */
		1A000000000000000000000A /* Build configuration list for PBXProject "MyApp" */ = {
			isa = XCConfigurationList;
			buildConfigurations = (
				1A000000000000000000000C /* Debug */,
			);
			defaultConfigurationIsVisible = 0;
			defaultConfigurationName = Debug;
		};
		1A000000000000000000000B /* Build configuration list for PBXNativeTarget "MyApp" */ = {
			isa = XCConfigurationList;
			buildConfigurations = (
				1A000000000000000000000D /* Debug */,
			);
			defaultConfigurationIsVisible = 0;
			defaultConfigurationName = Debug;
		};
/* End XCConfigurationList section */
	};
	rootObject = 1A0000000000000000000001 /* Project object */;
}
"""

_APP_DELEGATE_CHILD = "\t\t\t\t1A0000000000000000000005 /* AppDelegate.swift */,\n"
_APP_DELEGATE_REF_LINE = (
    '\t\t1A0000000000000000000005 /* AppDelegate.swift */ = {isa = PBXFileReference; '
    'lastKnownFileType = sourcecode.swift; path = AppDelegate.swift; sourceTree = "<group>"; };\n'
)


class SampleProject:
    """A sample project on disk: MyApp/, MyApp.xcodeproj/project.pbxproj, MyApp/AppDelegate.swift."""

    PROJECT_ID = PROJECT_ID
    MAIN_GROUP = MAIN_GROUP
    APP_GROUP = APP_GROUP
    APP_DELEGATE_REF = APP_DELEGATE_REF
    APP_DELEGATE_BUILD_FILE = APP_DELEGATE_BUILD_FILE
    MISSING_REF = MISSING_REF
    GHOST_ID = GHOST_ID

    def __init__(self, root: Path, manifest_text: str = SAMPLE_MANIFEST):
        self.root = root
        self.bundle = root / "MyApp.xcodeproj"
        self.manifest = self.bundle / "project.pbxproj"
        self.sources = root / "MyApp"

        self.bundle.mkdir(parents=True)
        self.sources.mkdir(parents=True)
        (self.sources / "AppDelegate.swift").write_text("import UIKit\n")
        self.write_manifest(manifest_text)

    def write_manifest(self, text: str) -> None:
        self.manifest.write_text(text, encoding="utf-8")

    def read_manifest(self) -> str:
        return self.manifest.read_text(encoding="utf-8")

    def replace(self, old: str, new: str) -> None:
        text = self.read_manifest()
        assert old in text, f"{old!r} not in manifest"
        self.write_manifest(text.replace(old, new, 1))

    def add_file(self, relative: str, content: str = "") -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return path

    # Controlled corruptions

    def add_dangling_child(self) -> None:
        """MyApp group lists an id that has no object."""
        self.replace(_APP_DELEGATE_CHILD,
                     _APP_DELEGATE_CHILD + f"\t\t\t\t{GHOST_ID} /* Ghost.swift */,\n")

    def add_missing_file_reference(self, name: str = "Missing.swift") -> None:
        """A file reference in the MyApp group whose file does not exist."""
        self.replace(
            _APP_DELEGATE_REF_LINE,
            _APP_DELEGATE_REF_LINE
            + f'\t\t{MISSING_REF} /* {name} */ = {{isa = PBXFileReference; '
              f'lastKnownFileType = sourcecode.swift; path = {name}; sourceTree = "<group>"; }};\n'
        )
        self.replace(_APP_DELEGATE_CHILD, _APP_DELEGATE_CHILD + f"\t\t\t\t{MISSING_REF} /* {name} */,\n")

    def remove_main_group(self) -> None:
        self.replace(f"\t\t\tmainGroup = {MAIN_GROUP};\n", "")


@pytest.fixture
def state_dir(tmp_path):
    """State directory (logs, backups, locks) outside any project tree"""
    return tmp_path / "state"


@pytest.fixture
def guard_config(state_dir):
    """Configuration isolated to a temporary state directory"""
    config = GuardConfig(state_directory=str(state_dir))
    config.logging.log_to_console = False
    config.logging.log_to_file = False
    config.transactions.lock_timeout_ms = 500
    config.transactions.lock_poll_interval_ms = 10
    config.integrity.lock_probe_timeout_ms = 50
    config.notify.enabled = False
    set_config(config)
    yield config
    set_config(None)


@pytest.fixture
def disabled_config(guard_config):
    """Configuration with transactional error handling switched off"""
    guard_config.enabled = False
    return guard_config


@pytest.fixture
def manager(guard_config):
    """Transaction manager using the isolated configuration"""
    return TransactionManager(guard_config)


@pytest.fixture
def checker(guard_config):
    """Integrity checker using the isolated configuration"""
    return IntegrityChecker(guard_config)


@pytest.fixture
def healer(guard_config, manager):
    """Self-healer sharing the fixture manager"""
    return SelfHealer(guard_config, manager=manager)


@pytest.fixture
def make_project(tmp_path):
    """Factory for sample projects under tmp_path"""
    counter = {"n": 0}

    def _make(manifest_text: str = SAMPLE_MANIFEST) -> SampleProject:
        counter["n"] += 1
        return SampleProject(tmp_path / f"project{counter['n']}", manifest_text)

    return _make


@pytest.fixture
def sample_project(make_project):
    """A structurally sound sample project"""
    return make_project()


@pytest.fixture
def text_file(tmp_path):
    """A file containing 'old'"""
    path = tmp_path / "work" / "X.txt"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("old")
    return path


def read_log_events(config, txn_id=None):
    """Event names in the transaction log, optionally for one transaction"""
    from project_guard.transaction_log import TransactionLog
    records = TransactionLog(config.transaction_log_path).records()
    return [r.event for r in records if txn_id is None or r.txn_id == txn_id]


@pytest.fixture
def log_events(guard_config):
    """Callable returning logged event names"""
    return lambda txn_id=None: read_log_events(guard_config, txn_id)
