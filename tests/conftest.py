"""
pytest configuration and fixtures for record reader tests.

Provides reusable fixtures for:
- Test catalogues under tests/fixtures
- Payload builders for the skill-kit and UI style fixtures
- Hypothesis property-based testing configuration
"""

import os
import struct
import sys
from pathlib import Path

import pytest

# Add tools to path
sys.path.insert(0, str(Path(__file__).parent.parent / "tools"))

FIXTURES_DIR = Path(__file__).parent / "fixtures"

# Configure Hypothesis profiles
try:
    from hypothesis import settings, Verbosity, Phase

    # Default profile: balanced speed and coverage
    settings.register_profile(
        "default",
        max_examples=100,
        deadline=None,
    )

    # CI profile: more thorough testing
    settings.register_profile(
        "ci",
        max_examples=500,
        deadline=None,
        phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    )

    # Dev profile: fast iteration
    settings.register_profile(
        "dev",
        max_examples=10,
        deadline=None,
    )

    # Debug profile: verbose output
    settings.register_profile(
        "debug",
        max_examples=10,
        verbosity=Verbosity.verbose,
        deadline=None,
    )

    settings.load_profile(os.environ.get("HYPOTHESIS_PROFILE", "default"))

except ImportError:
    pass  # Hypothesis not installed


def u32s(*values: int) -> bytes:
    """Pack little-endian u32 words."""
    return struct.pack(f'<{len(values)}I', *values)


def skill_kit_payload() -> bytes:
    """A valid SkillKitDefinition encoding for tests/fixtures/skill_kit.yaml."""
    return b''.join([
        # arActiveSkillEntries: (snoPower, dwSlot) x 2, second power is null
        u32s(2, 1001, 0, 0xFFFFFFFF, 1),
        # unk_a6a18af: one Power reference
        u32s(1, 2002),
        # arNodes: two nodes, the second repeats tag 5
        u32s(2),
        u32s(1) + struct.pack('<ff', 0.0, 0.0) + u32s(1, 5) + struct.pack('<i', -3),
        u32s(2) + struct.pack('<ff', 1.5, -2.5) + u32s(2, 5, 10, 5, 20),
        # arConnections
        u32s(1, 1, 2),
        # dwNextID
        u32s(3),
        # vNodeMinPositions, vNodeMaxPositions, unk_11ce0b6, unk_99647ce
        struct.pack('<8f', -1.0, -2.0, 3.0, 4.0, 0.25, 0.5, 8.0, 16.0),
    ])


def item_button_payload() -> bytes:
    """A valid UIItemButtonStyle encoding for tests/fixtures/ui_styles.yaml."""
    return b''.join([
        # UIStyle prefix
        u32s(7, 0),                         # dwType, dwPad
        u32s(0xFFFFFFFF, 0x1234),           # hParentStyle (null UI handle)
        struct.pack('<q', -1),              # unk_441f783
        u32s(1, 2) + struct.pack('<i', -7),  # unk_b835d15
        u32s(1),                            # tConsoleInput
        u32s(0),                            # unk_b4f614c
        # UIThumbButtonStyle
        u32s(55) + struct.pack('<f', 12.0) + bytes([255, 0, 0, 128]),  # tFont
        u32s(0),                            # unk_4741819
        u32s(66) + struct.pack('<ff', 32.0, 32.0),  # tIcon
        struct.pack('<i', -1),              # unk_4cce0b6
        u32s(2, 1, 1, 1, 2),                # unk_10f81f0
        # UIItemButtonStyle
        u32s(1, 9, 9),                      # unk_adf9a5f
    ])


@pytest.fixture(scope="session")
def fixtures_dir():
    return FIXTURES_DIR


@pytest.fixture(scope="session")
def skill_kit_catalogue():
    from record_schema import load_catalogue
    return load_catalogue(FIXTURES_DIR / "skill_kit.yaml")


@pytest.fixture(scope="session")
def ui_catalogue():
    from record_schema import load_catalogue
    return load_catalogue(FIXTURES_DIR / "ui_styles.yaml")


# Markers for test categorization
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
