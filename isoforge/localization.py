#!/usr/bin/env python3
"""
Localized status text for progress events.

Components emit status keys; the text provider turns them into display
strings. Only English ships today.
"""

from typing import Dict

ENGLISH: Dict[str, str] = {
    "progress_validating_iso": "Validating ISO file...",
    "progress_checking_disk_space": "Checking available disk space...",
    "progress_preparing_directory": "Preparing working directory...",
    "progress_mounting_iso": "Mounting ISO image...",
    "progress_copying_files": "Copying installation files...",
    "progress_dismounting_iso": "Dismounting ISO image...",
    "progress_verifying_extraction": "Verifying extracted files...",
    "progress_extraction_complete": "ISO extraction completed",
    "progress_exporting_drivers": "Exporting drivers from this computer...",
    "progress_categorizing_drivers": "Categorizing drivers...",
    "progress_drivers_added": "Added {0} driver packages",
    "progress_detecting_format": "Detecting image format...",
    "progress_converting_image": "Converting image {0} of {1}...",
    "progress_deleting_source": "Removing original image file...",
    "progress_conversion_complete": "Image conversion completed",
    "progress_locating_oscdimg": "Looking for oscdimg.exe...",
    "progress_installing_oscdimg": "Installing oscdimg via winget...",
    "progress_downloading_adk": "Downloading Windows ADK installer...",
    "progress_installing_adk": "Installing Windows ADK Deployment Tools...",
    "progress_installing_winget": "Installing winget...",
    "progress_creating_iso": "Creating bootable ISO...",
    "progress_iso_created": "ISO created successfully",
    "progress_building_script": "Generating provisioning script...",
    "progress_validating_script": "Validating provisioning script...",
    "progress_cleaning_up": "Cleaning up working directory...",
    "error_insufficient_space": "Not enough disk space on {0}: {1:.2f} GB required, {2:.2f} GB available",
    "conversion_manual_cleanup": "The new image was created at {0}, but the original file {1} could not be deleted. Delete it manually before creating the ISO.",
}


class TextProvider:
    """Looks up localized strings by key."""

    def __init__(self, strings: Dict[str, str] = None):
        self._strings = dict(strings or ENGLISH)

    def get(self, key: str, *args) -> str:
        """Return the string for key formatted with args; unknown keys echo the key."""
        template = self._strings.get(key)
        if template is None:
            return key
        if args:
            return template.format(*args)
        return template
