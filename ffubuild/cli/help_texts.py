# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/cli/help_texts.py
from __future__ import annotations

# Pure help text for the argparse epilog. No imports beyond __future__.

YAML_EXAMPLE = r"""# ffubuild configuration example (YAML)
#
# Run:
#   ffubuild --config build.yaml
#
# Merge multiple configs (later overrides earlier, CLI flags override both):
#   ffubuild --config base.yaml --config lab.yaml --memory-gb 16
#
work_dir: C:/FFUDevelopment
hypervisor: hyperv          # hyperv | vmware
vm_name: _FFU-Build
memory_gb: 8
processors: 4
disk_size_gb: 50
iso_path: C:/ISO/Win11_24H2.iso
ffu_dir: C:/FFUDevelopment/FFU

# Optional capture share + local account (removed again by the Cleanup phase)
capture_share: true
share_name: FFUCaptureShare
capture_user: ffu_user

# Phase commands; {placeholders}: work_dir vm_name vhdx mount iso drivers
# updates apps media ffu ffu_dir share share_user share_password
commands:
  DriverDownload: pwsh -NoProfile -File C:/FFU/Get-Drivers.ps1 -Out {drivers}
  VHDXCreation: [dism, /Apply-Image, "/ImageFile:{iso}", /Index:1, "/ApplyDir:{mount}"]
  AppInstallation: pwsh -NoProfile -File C:/FFU/Install-Apps.ps1 -VMName {vm_name}
  FFUCapture: [dism, /Capture-FFU, "/ImageFile:{ffu}", "/CaptureDrive:{vhdx}", "/Name:{vm_name}"]

# Resume policy
unattended: false           # true: resume a valid checkpoint without asking
force_fresh: false          # true: discard any checkpoint
"""

FEATURE_SUMMARY = r"""
  - Fifteen ordered build phases with a checkpoint after each one
  - Resume from the last completed phase (validated against disk and VM)
  - Hyper-V and VMware Workstation backends behind one provider interface
  - Ctrl+C cancels cooperatively and rolls back everything the build created
  - NDJSON message log with --messages-log
"""

EXIT_CODES = r"""
Exit status:
  0    build completed
  1    build failed
  2    bad configuration
  130  build cancelled
"""
