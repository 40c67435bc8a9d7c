#!/usr/bin/env python3
"""
PowerShell building blocks of the provisioning script (Winhancements.ps1).

Each function returns unindented script text; the builder indents blocks
with indent_block(), which leaves here-string bodies and terminators at
column 0 as PowerShell requires.
"""

from typing import List, Optional

from isoforge.config import AppItem, BuildSettings, ConfigurationItem, PowerSettingData
from isoforge.registry_emitter import escape_ps

BANNER = "# " + "=" * 76

MARKER_KEY = r"Software\Winhance"
MARKER_NAME = "UserCustomizationsApplied"
REENTRY_TASK_NAME = "WinhanceUserCustomizations"
TASK_PATH = "\\Winhance"
MACHINE_SCRIPTS_DIR = r"C:\ProgramData\Winhance\Scripts"

XBOX_PACKAGES = ("Microsoft.GamingApp", "Microsoft.XboxGamingOverlay", "Microsoft.XboxGameOverlay")

SOURCE_POWER_SCHEMES = [
    ("Ultimate Performance", "e9a42b02-d5df-448d-aa00-03f14749eb61"),
    ("High Performance", "8c5e7fda-e8bf-4a96-9a85-a6e23a8c635c"),
    ("Balanced", "381b4222-f694-41f0-9685-ff5bb260df2e"),
]

HIDDEN_POWER_SETTINGS = [
    ("2a737441-1930-4402-8d77-b2bebba308a3", "0853a681-27c8-4100-a2fd-82013e970683"),
    ("2a737441-1930-4402-8d77-b2bebba308a3", "d4e98f31-5ffe-4ce1-be31-1b38b384c009"),
    ("4f971e89-eebd-4455-a8de-9e59040e7347", "7648efa3-dd9c-4e3e-b566-50f929386280"),
    ("4f971e89-eebd-4455-a8de-9e59040e7347", "96996bc0-ad50-47ec-923b-6f41874dd9eb"),
    ("4f971e89-eebd-4455-a8de-9e59040e7347", "5ca83367-6e45-459f-a27b-476b1d01c936"),
    ("54533251-82be-4824-96c1-47b60b740d00", "94d3a615-a899-4ac5-ae2b-e4d8f634367f"),
    ("54533251-82be-4824-96c1-47b60b740d00", "be337238-0d82-4146-a960-4f3749d470c7"),
    ("54533251-82be-4824-96c1-47b60b740d00", "465e1f50-b610-473a-ab58-00d1077dc418"),
    ("54533251-82be-4824-96c1-47b60b740d00", "40fbefc7-2e9d-4d25-a185-0cfd8574bac6"),
    ("54533251-82be-4824-96c1-47b60b740d00", "0cc5b647-c1df-4637-891a-dec35c318583"),
    ("54533251-82be-4824-96c1-47b60b740d00", "ea062031-0e34-4ff1-9b6d-eb1059334028"),
    ("54533251-82be-4824-96c1-47b60b740d00", "36687f9e-e3a5-4dbf-b1dc-15eb381c6863"),
    ("54533251-82be-4824-96c1-47b60b740d00", "06cadf0e-64ed-448a-8927-ce7bf90eb35d"),
    ("54533251-82be-4824-96c1-47b60b740d00", "12a0ab44-fe28-4fa9-b3bd-4b64f44960a6"),
]


def indent_block(text: str, indent: str) -> str:
    """Indent every non-empty line except here-string bodies and terminators."""
    out = []
    in_here_string = False
    for line in text.split("\n"):
        if in_here_string:
            out.append(line)
            if line.startswith("'@") or line.startswith('"@'):
                in_here_string = False
            continue
        out.append(indent + line if line.strip() else line)
        stripped = line.rstrip()
        if stripped.endswith("@'") or stripped.endswith('@"'):
            in_here_string = True
    return "\n".join(out)


def banner(title: str) -> str:
    return f"\n{BANNER}\n# {title}\n{BANNER}\n"


def header() -> str:
    return r"""<#
.SYNOPSIS
    Windows 10/11 Customization and Optimization Script
.DESCRIPTION
    Applies registry settings, app removals, optimizations and customizations
    during unattended Windows setup.
.NOTES
    Requires Administrator privileges
    Compatible with Windows 10 and Windows 11
.PARAMETER UserCustomizations
    When specified, applies ONLY HKCU (user-specific) registry settings.
    When not specified, applies all settings EXCEPT HKCU entries.
    User customizations are tracked and only apply once per user.
    To re-apply, delete: HKCU\Software\Winhance\UserCustomizationsApplied
.EXAMPLE
    .\Winhancements.ps1
.EXAMPLE
    .\Winhancements.ps1 -UserCustomizations
#>

param(
    [switch]$UserCustomizations
)
"""


def logging_setup(settings: BuildSettings) -> str:
    log_path = f"{settings.remote_log_dir}\\Winhancements.txt"
    return banner("LOGGING SETUP") + r"""
$LogPath = '__LOG_PATH__'
$null = New-Item -Path (Split-Path $LogPath) -ItemType Directory -Force

function Write-Log {
    param(
        [string]$Message,
        [ValidateSet("INFO", "SUCCESS", "WARNING", "ERROR")]
        [string]$Level = "INFO"
    )

    $Timestamp = Get-Date -Format "yyyy-MM-dd HH:mm:ss"
    Add-Content -Path $LogPath -Value "[$Timestamp] [$Level] $Message" -Encoding UTF8
}

Write-Log "================================================================================" "INFO"
Write-Log "Windows Optimization & Customization Script Started" "INFO"
Write-Log "Script Path: $($MyInvocation.MyCommand.Path)" "INFO"
if ($UserCustomizations) {
    Write-Log "MODE: User Customizations Only (HKCU registry entries)" "INFO"
} else {
    Write-Log "MODE: System Customizations (All settings except HKCU entries)" "INFO"
}
Write-Log "================================================================================" "INFO"
""".replace("__LOG_PATH__", escape_ps(log_path))


REGISTRY_HELPERS = r"""
function Get-TargetUser {
    try {
        $user = Get-WmiObject Win32_ComputerSystem | Select-Object -ExpandProperty UserName
        if ($user -and $user -ne "NT AUTHORITY\SYSTEM") {
            $username = $user.Split('\')[1]
            if ($username -ne "defaultuser0") {
                return $username
            }
        }
    } catch { }

    try {
        $explorer = Get-WmiObject Win32_Process -Filter "Name='explorer.exe'" | Select-Object -First 1
        if ($explorer) {
            $owner = $explorer.GetOwner()
            if ($owner.User -and $owner.User -ne "defaultuser0") {
                return $owner.User
            }
        }
    } catch { }

    return $null
}

function Get-UserSID {
    param($Username)
    try {
        $user = New-Object System.Security.Principal.NTAccount($Username)
        return $user.Translate([System.Security.Principal.SecurityIdentifier]).Value
    } catch {
        return $null
    }
}

function Set-RegistryValue {
    param([string]$Path, [string]$Name, [string]$Type, $Value, [string]$Description)
    try {
        if (-not (Test-Path $Path)) {
            New-Item -Path $Path -Force | Out-Null
        }
        Set-ItemProperty -Path $Path -Name $Name -Value $Value -Type $Type -Force
        Write-Log "$Description | $Path\$Name = $Value" "SUCCESS"
    } catch {
        Write-Log "Failed to set $Path\$Name : $($_.Exception.Message)" "ERROR"
    }
}

function Remove-RegistryValue {
    param([string]$Path, [string]$Name, [string]$Description)
    try {
        if (Test-Path $Path) {
            if (Get-ItemProperty -Path $Path -Name $Name -ErrorAction SilentlyContinue) {
                Remove-ItemProperty -Path $Path -Name $Name -ErrorAction SilentlyContinue
                Write-Log "$Description | Removed $Path\$Name" "SUCCESS"
            }
        }
    } catch {
        Write-Log "Failed to remove $Path\$Name : $($_.Exception.Message)" "ERROR"
    }
}

function Remove-RegistryKey {
    param([string]$Path, [string]$Description)
    try {
        if (Test-Path $Path) {
            Remove-Item -Path $Path -Recurse -Force -ErrorAction SilentlyContinue
            Write-Log "$Description | Removed key $Path" "SUCCESS"
        }
    } catch {
        Write-Log "Failed to remove key $Path : $($_.Exception.Message)" "ERROR"
    }
}

function New-RegistryKey {
    param([string]$Path, [string]$Description)
    try {
        if (-not (Test-Path $Path)) {
            New-Item -Path $Path -Force | Out-Null
            Write-Log "$Description | Created key $Path" "SUCCESS"
        }
    } catch {
        Write-Log "Failed to create key $Path : $($_.Exception.Message)" "ERROR"
    }
}

function Get-BinaryValue {
    param([string]$Path, [string]$Name, [int]$ByteIndex)
    if (-not (Test-Path $Path)) {
        New-Item -Path $Path -Force | Out-Null
    }
    $current = Get-ItemProperty -Path $Path -Name $Name -ErrorAction SilentlyContinue
    if ($null -eq $current -or $null -eq $current.$Name) {
        return New-Object byte[] ([Math]::Max(12, $ByteIndex + 1))
    }
    $bytes = [byte[]]$current.$Name
    if ($bytes.Length -le $ByteIndex) {
        $grown = New-Object byte[] ($ByteIndex + 1)
        [Array]::Copy($bytes, $grown, $bytes.Length)
        $bytes = $grown
    }
    return ,$bytes
}

function Set-BinaryBit {
    param([string]$Path, [string]$Name, [int]$ByteIndex, [byte]$BitMask, [bool]$SetBit, [string]$Description)
    try {
        $bytes = Get-BinaryValue -Path $Path -Name $Name -ByteIndex $ByteIndex
        if ($SetBit) {
            $bytes[$ByteIndex] = $bytes[$ByteIndex] -bor $BitMask
        } else {
            $bytes[$ByteIndex] = $bytes[$ByteIndex] -band (-bnot $BitMask)
        }
        Set-ItemProperty -Path $Path -Name $Name -Value $bytes -Type Binary -Force
        Write-Log "$Description | $Path\$Name bit mask 0x$($BitMask.ToString('X2')) at byte $ByteIndex = $SetBit" "SUCCESS"
    } catch {
        Write-Log "Failed to modify binary bit $Path\$Name : $($_.Exception.Message)" "ERROR"
    }
}

function Set-BinaryByte {
    param([string]$Path, [string]$Name, [int]$ByteIndex, [byte]$ByteValue, [string]$Description)
    try {
        $bytes = Get-BinaryValue -Path $Path -Name $Name -ByteIndex $ByteIndex
        $bytes[$ByteIndex] = $ByteValue
        Set-ItemProperty -Path $Path -Name $Name -Value $bytes -Type Binary -Force
        Write-Log "$Description | $Path\$Name byte $ByteIndex = 0x$($ByteValue.ToString('X2'))" "SUCCESS"
    } catch {
        Write-Log "Failed to modify binary byte $Path\$Name : $($_.Exception.Message)" "ERROR"
    }
}
"""

# Launches a command line in the active console session with the logged-on
# user's token and waits for it; the caller only ever sees the exit code.
START_PROCESS_AS_USER = r"""
function Start-ProcessAsUser {
    param(
        [Parameter(Mandatory = $true)][string]$CommandLine,
        [int]$TimeoutMs = __TIMEOUT_MS__
    )

    if (-not ('IsoForge.UserLauncher' -as [type])) {
        Add-Type -TypeDefinition @'
using System;
using System.Runtime.InteropServices;

namespace IsoForge
{
    public static class UserLauncher
    {
        [StructLayout(LayoutKind.Sequential, CharSet = CharSet.Unicode)]
        struct STARTUPINFO
        {
            public int cb; public string lpReserved; public string lpDesktop; public string lpTitle;
            public int dwX; public int dwY; public int dwXSize; public int dwYSize;
            public int dwXCountChars; public int dwYCountChars; public int dwFillAttribute; public int dwFlags;
            public short wShowWindow; public short cbReserved2; public IntPtr lpReserved2;
            public IntPtr hStdInput; public IntPtr hStdOutput; public IntPtr hStdError;
        }

        [StructLayout(LayoutKind.Sequential)]
        struct PROCESS_INFORMATION
        {
            public IntPtr hProcess; public IntPtr hThread; public int dwProcessId; public int dwThreadId;
        }

        [DllImport("kernel32.dll")] static extern uint WTSGetActiveConsoleSessionId();
        [DllImport("wtsapi32.dll", SetLastError = true)] static extern bool WTSQueryUserToken(uint sessionId, out IntPtr token);
        [DllImport("userenv.dll", SetLastError = true)] static extern bool CreateEnvironmentBlock(out IntPtr env, IntPtr token, bool inherit);
        [DllImport("userenv.dll", SetLastError = true)] static extern bool DestroyEnvironmentBlock(IntPtr env);
        [DllImport("advapi32.dll", SetLastError = true, CharSet = CharSet.Unicode)]
        static extern bool CreateProcessAsUserW(IntPtr token, string application, string commandLine,
            IntPtr processAttributes, IntPtr threadAttributes, bool inheritHandles, uint flags,
            IntPtr environment, string currentDirectory, ref STARTUPINFO startupInfo, out PROCESS_INFORMATION processInfo);
        [DllImport("kernel32.dll", SetLastError = true)] static extern uint WaitForSingleObject(IntPtr handle, uint milliseconds);
        [DllImport("kernel32.dll", SetLastError = true)] static extern bool GetExitCodeProcess(IntPtr process, out uint exitCode);
        [DllImport("kernel32.dll", SetLastError = true)] static extern bool TerminateProcess(IntPtr process, uint exitCode);
        [DllImport("kernel32.dll", SetLastError = true)] static extern bool CloseHandle(IntPtr handle);

        const uint CREATE_UNICODE_ENVIRONMENT = 0x00000400;
        const uint CREATE_NO_WINDOW = 0x08000000;

        public static int Run(string commandLine, uint timeoutMs)
        {
            IntPtr token;
            if (!WTSQueryUserToken(WTSGetActiveConsoleSessionId(), out token)) return -1;
            IntPtr environment = IntPtr.Zero;
            try
            {
                CreateEnvironmentBlock(out environment, token, false);
                var startupInfo = new STARTUPINFO();
                startupInfo.cb = Marshal.SizeOf(typeof(STARTUPINFO));
                startupInfo.lpDesktop = "winsta0\\default";
                PROCESS_INFORMATION processInfo;
                if (!CreateProcessAsUserW(token, null, commandLine, IntPtr.Zero, IntPtr.Zero, false,
                        CREATE_UNICODE_ENVIRONMENT | CREATE_NO_WINDOW, environment, null,
                        ref startupInfo, out processInfo)) return -2;
                try
                {
                    if (WaitForSingleObject(processInfo.hProcess, timeoutMs) != 0)
                    {
                        TerminateProcess(processInfo.hProcess, 1);
                        return -3;
                    }
                    uint exitCode;
                    GetExitCodeProcess(processInfo.hProcess, out exitCode);
                    return (int)exitCode;
                }
                finally
                {
                    CloseHandle(processInfo.hThread);
                    CloseHandle(processInfo.hProcess);
                }
            }
            finally
            {
                if (environment != IntPtr.Zero) DestroyEnvironmentBlock(environment);
                CloseHandle(token);
            }
        }
    }
}
'@
    }

    $ec = [IsoForge.UserLauncher]::Run($CommandLine, [uint32]$TimeoutMs)
    Write-Log "User process exited with code $ec" "INFO"
    return ($ec -eq 0)
}
"""


def helper_functions(settings: BuildSettings) -> str:
    return REGISTRY_HELPERS + START_PROCESS_AS_USER.replace(
        "__TIMEOUT_MS__", str(settings.child_process_timeout_ms))


def scripts_directory_setup(settings: BuildSettings) -> str:
    """Create the scripts folder and keep a copy of this script where the re-entry task expects it."""
    installed_copy = f"{settings.remote_scripts_dir}\\{settings.script_file_name}"
    return r"""$scriptsDir = "__SCRIPTS_DIR__"
if (!(Test-Path $scriptsDir)) {
    New-Item -ItemType Directory -Path $scriptsDir -Force | Out-Null
    Write-Log "Created scripts directory: $scriptsDir" "SUCCESS"
} else {
    Write-Log "Scripts directory already exists: $scriptsDir" "INFO"
}

$installedScript = '__INSTALLED_COPY__'
if ($PSCommandPath -and ($PSCommandPath -ne $installedScript)) {
    try {
        New-Item -ItemType Directory -Path (Split-Path $installedScript) -Force | Out-Null
        Copy-Item -Path $PSCommandPath -Destination $installedScript -Force
        Write-Log "Copied script to $installedScript" "SUCCESS"
    } catch {
        Write-Log "Failed to copy script to ${installedScript}: $($_.Exception.Message)" "ERROR"
    }
}
""".replace("__SCRIPTS_DIR__", MACHINE_SCRIPTS_DIR).replace("__INSTALLED_COPY__", escape_ps(installed_copy))


def _ps_array(name: str, values: List[str]) -> str:
    body = "".join(f"    '{escape_ps(v)}'\n" for v in values)
    return f"${name} = @(\n{body})\n"


def bloat_removal_script(packages: List[str], capabilities: List[str],
                         optional_features: List[str], special_apps: List[str]) -> str:
    """Standalone BloatRemoval.ps1 removing the given apps, capabilities and features."""
    include_xbox_fix = any(p.lower() in (x.lower() for x in XBOX_PACKAGES) for p in packages)
    text = r"""<#
.SYNOPSIS
    Removes selected Windows apps, legacy capabilities and optional features.
#>

$logFolder = "C:\ProgramData\Winhance\Logs"
$logFile = "$logFolder\BloatRemovalLog.txt"
if (!(Test-Path $logFolder)) {
    New-Item -ItemType Directory -Path $logFolder -Force | Out-Null
}

function Write-Log {
    param ([string]$Message)
    "$(Get-Date -Format 'yyyy-MM-dd HH:mm:ss') - $Message" | Out-File -FilePath $logFile -Append
}

"""
    text += _ps_array("packages", packages) + "\n"
    text += _ps_array("capabilities", capabilities) + "\n"
    text += _ps_array("optionalFeatures", optional_features) + "\n"
    text += _ps_array("specialApps", special_apps) + "\n"
    text += r"""Write-Log "Starting bloat removal process"

$allInstalled = Get-AppxPackage -AllUsers -ErrorAction SilentlyContinue
$allProvisioned = Get-AppxProvisionedPackage -Online -ErrorAction SilentlyContinue

# Deprovision first, otherwise Remove-AppxPackage -AllUsers fails on Windows 10
foreach ($package in $packages) {
    foreach ($p in @($allProvisioned | Where-Object DisplayName -eq $package)) {
        try {
            Remove-AppxProvisionedPackage -Online -PackageName $p.PackageName -ErrorAction Stop | Out-Null
            Write-Log "Deprovisioned: $($p.PackageName)"
        } catch {
            Write-Log "Failed to deprovision $($p.PackageName): $($_.Exception.Message)"
        }
    }
    foreach ($p in @($allInstalled | Where-Object Name -eq $package)) {
        try {
            Remove-AppxPackage -Package $p.PackageFullName -AllUsers -ErrorAction Stop
            Write-Log "Removed installed package: $($p.PackageFullName)"
        } catch {
            Write-Log "Failed to remove installed package $($p.PackageFullName): $($_.Exception.Message)"
        }
    }
}

$allCaps = Get-WindowsCapability -Online -ErrorAction SilentlyContinue
foreach ($capability in $capabilities) {
    $matching = @($allCaps | Where-Object { $_.Name -like "$capability*" -and $_.State -eq "Installed" })
    if (-not $matching) {
        Write-Log "Capability not found or not installed: $capability"
    }
    foreach ($cap in $matching) {
        try {
            Remove-WindowsCapability -Online -Name $cap.Name -ErrorAction Stop | Out-Null
            Write-Log "Removed capability: $($cap.Name)"
        } catch {
            Write-Log "Failed to remove capability $($cap.Name): $($_.Exception.Message)"
        }
    }
}

$enabledFeatures = @()
foreach ($feature in $optionalFeatures) {
    $existing = Get-WindowsOptionalFeature -Online -FeatureName $feature -ErrorAction SilentlyContinue
    if ($existing -and $existing.State -eq "Enabled") {
        $enabledFeatures += $feature
    } else {
        Write-Log "Feature not found or not enabled: $feature"
    }
}
if ($enabledFeatures.Count -gt 0) {
    Write-Log "Disabling features: $($enabledFeatures -join ', ')"
    Disable-WindowsOptionalFeature -Online -FeatureName $enabledFeatures -NoRestart -ErrorAction SilentlyContinue | Out-Null
}

$uninstallPaths = @(
    'HKLM:\SOFTWARE\Microsoft\Windows\CurrentVersion\Uninstall',
    'HKCU:\SOFTWARE\Microsoft\Windows\CurrentVersion\Uninstall'
)
foreach ($specialApp in $specialApps) {
    Write-Log "Processing special app: $specialApp"
    if ($specialApp -eq 'OneNote') {
        foreach ($name in @('OneNote', 'ONENOTE', 'ONENOTEM')) {
            Get-Process -Name $name -ErrorAction SilentlyContinue | Stop-Process -Force -ErrorAction SilentlyContinue
        }
    }
    foreach ($basePath in $uninstallPaths) {
        $keys = Get-ChildItem -Path $basePath -ErrorAction SilentlyContinue | Where-Object { $_.PSChildName -like "$specialApp*" }
        foreach ($key in $keys) {
            $uninstallString = (Get-ItemProperty -Path $key.PSPath -ErrorAction SilentlyContinue).UninstallString
            if (-not $uninstallString) { continue }
            $silent = if ($uninstallString -like '*OfficeClickToRun.exe*') { 'DisplayLevel=False' } else { '/silent' }
            if ($uninstallString -match '^"([^"]+)"(.*)$') {
                Start-Process -FilePath $matches[1] -ArgumentList "$($matches[2].Trim()) $silent" -NoNewWindow -Wait -ErrorAction SilentlyContinue
            } else {
                Start-Process -FilePath $uninstallString -ArgumentList $silent -NoNewWindow -Wait -ErrorAction SilentlyContinue
            }
            Write-Log "Completed uninstall for $specialApp"
        }
    }
}
"""
    if include_xbox_fix:
        text += r"""
# Keep Game DVR from prompting for the removed Xbox overlay
reg add "HKLM\SOFTWARE\Policies\Microsoft\Windows\GameDVR" /f /t REG_DWORD /v "AllowGameDVR" /d 0 2>$null | Out-Null
Write-Log "Game DVR disabled by policy"
"""
    text += '\nWrite-Log "Bloat removal process completed"\n'
    return text


EDGE_REMOVAL_SCRIPT = r"""$logFile = "C:\ProgramData\Winhance\Logs\EdgeRemovalLog.txt"
New-Item -ItemType Directory -Path (Split-Path $logFile) -Force | Out-Null
function Write-Log {
    param ([string]$Message)
    "$(Get-Date -Format 'yyyy-MM-dd HH:mm:ss') - $Message" | Out-File -FilePath $logFile -Append
}

Write-Log "Starting Edge removal"
foreach ($name in @('msedge', 'MicrosoftEdgeUpdate', 'msedgewebview2')) {
    Get-Process -Name $name -ErrorAction SilentlyContinue | Stop-Process -Force -ErrorAction SilentlyContinue
}

# The Edge uninstaller refuses to run unless this marker file exists
$stubDir = "$env:SystemRoot\SystemApps\Microsoft.MicrosoftEdge_8wekyb3d8bbwe"
New-Item -ItemType Directory -Path $stubDir -Force | Out-Null
New-Item -ItemType File -Path "$stubDir\MicrosoftEdge.exe" -Force | Out-Null

$uninstallKeys = Get-ChildItem "HKLM:\SOFTWARE\WOW6432Node\Microsoft\Windows\CurrentVersion\Uninstall" -ErrorAction SilentlyContinue
foreach ($key in $uninstallKeys) {
    $props = Get-ItemProperty $key.PSPath -ErrorAction SilentlyContinue
    if ($props.DisplayName -like "*Microsoft Edge*" -and $props.DisplayName -notlike "*WebView*" -and $props.UninstallString) {
        Write-Log "Running uninstaller: $($props.UninstallString)"
        if ($props.UninstallString -like "*msiexec*") {
            Start-Process cmd.exe "/c $($props.UninstallString) /quiet" -WindowStyle Hidden -Wait | Out-Null
        } else {
            Start-Process cmd.exe "/c $($props.UninstallString) --force-uninstall --silent" -WindowStyle Hidden -Wait | Out-Null
        }
    }
}

Get-AppxPackage -AllUsers -Name "Microsoft.MicrosoftEdge*" -ErrorAction SilentlyContinue |
    Remove-AppxPackage -AllUsers -ErrorAction SilentlyContinue
Remove-Item -Path "$stubDir\MicrosoftEdge.exe" -Force -ErrorAction SilentlyContinue

foreach ($shortcut in @("$env:PUBLIC\Desktop\Microsoft Edge.lnk", "$env:ProgramData\Microsoft\Windows\Start Menu\Programs\Microsoft Edge.lnk")) {
    Remove-Item -Path $shortcut -Force -ErrorAction SilentlyContinue
}
Write-Log "Edge removal completed"
"""

ONEDRIVE_REMOVAL_SCRIPT = r"""$logFile = "C:\ProgramData\Winhance\Logs\OneDriveRemovalLog.txt"
New-Item -ItemType Directory -Path (Split-Path $logFile) -Force | Out-Null
function Write-Log {
    param ([string]$Message)
    "$(Get-Date -Format 'yyyy-MM-dd HH:mm:ss') - $Message" | Out-File -FilePath $logFile -Append
}

Write-Log "Starting OneDrive removal"
Get-Process -Name "OneDrive" -ErrorAction SilentlyContinue | Stop-Process -Force -ErrorAction SilentlyContinue
Get-AppxPackage -AllUsers -Name "*OneDrive*" -ErrorAction SilentlyContinue |
    Remove-AppxPackage -AllUsers -ErrorAction SilentlyContinue

$setupPaths = @("$env:SystemRoot\System32\OneDriveSetup.exe", "$env:SystemRoot\SysWOW64\OneDriveSetup.exe")
foreach ($setup in $setupPaths) {
    if (Test-Path $setup) {
        Write-Log "Running $setup /uninstall"
        Start-Process -FilePath $setup -ArgumentList "/uninstall" -NoNewWindow -Wait -ErrorAction SilentlyContinue
    }
}

$uninstallKey = "HKLM:\SOFTWARE\Microsoft\Windows\CurrentVersion\Uninstall\OneDriveSetup.exe"
$uninstallString = (Get-ItemProperty -Path $uninstallKey -ErrorAction SilentlyContinue).UninstallString
if ($uninstallString) {
    Write-Log "Running registered uninstaller: $uninstallString"
    cmd.exe /c "$uninstallString /silent" 2>&1 | Out-Null
}

# Stop new profiles from reinstalling OneDrive at first sign-in
reg load "HKU\DefaultUser" "C:\Users\Default\NTUSER.DAT" 2>&1 | Out-Null
reg delete "HKU\DefaultUser\SOFTWARE\Microsoft\Windows\CurrentVersion\Run" /v "OneDriveSetup" /f 2>&1 | Out-Null
reg unload "HKU\DefaultUser" 2>&1 | Out-Null
Remove-Item -Path "C:\Users\Default\AppData\Roaming\Microsoft\Windows\Start Menu\Programs\OneDrive.lnk" -Force -ErrorAction SilentlyContinue
Write-Log "OneDrive removal completed"
"""


def _embed_script(variable: str, file_name: str, content: str) -> str:
    return (f"# Create {file_name}\n"
            f"${variable} = @'\n{content.rstrip()}\n'@\n\n"
            f"${variable}Path = Join-Path $scriptsDir \"{file_name}\"\n"
            "try {\n"
            f"    ${variable} | Out-File -FilePath ${variable}Path -Encoding UTF8 -Force\n"
            f"    Write-Log \"Created: {file_name}\" \"SUCCESS\"\n"
            "} catch {\n"
            f"    Write-Log \"Failed to create {file_name}: $($_.Exception.Message)\" \"ERROR\"\n"
            "}\n")


def app_removal(apps: List[AppItem], edge_id: str, onedrive_id: str) -> str:
    """
    WINDOWS APPS REMOVAL section.

    Regular Appx packages (and their sub-packages), capabilities and optional
    features go into BloatRemoval.ps1; Edge and OneDrive get dedicated
    scripts. Each script is run once and registered as a scheduled task.
    """
    packages: List[str] = []
    capabilities: List[str] = []
    optional_features: List[str] = []
    special_apps: List[str] = []
    remove_edge = False
    remove_onedrive = False

    for app in apps:
        if app.id == edge_id:
            remove_edge = True
        elif app.id == onedrive_id:
            remove_onedrive = True
        elif app.capability_name:
            capabilities.append(app.capability_name)
        elif app.optional_feature_name:
            optional_features.append(app.optional_feature_name)
        elif app.appx_package_name:
            packages.append(app.appx_package_name)
            packages.extend(app.sub_packages)
            if "onenote" in app.appx_package_name.lower() and "OneNote" not in special_apps:
                special_apps.append("OneNote")

    has_bloat = bool(packages or capabilities or optional_features or special_apps)
    parts = [banner("WINDOWS APPS REMOVAL")]
    scheduled = []
    if has_bloat:
        parts.append(_embed_script("bloatRemovalContent", "BloatRemoval.ps1",
                                   bloat_removal_script(packages, capabilities, optional_features, special_apps)))
        scheduled.append('$scriptsToExecute += @{Path = "$scriptsDir\\BloatRemoval.ps1"; '
                         'Name = "BloatRemoval"; TriggerType = "Logon"}')
    if remove_edge:
        parts.append(_embed_script("edgeRemovalContent", "EdgeRemoval.ps1", EDGE_REMOVAL_SCRIPT))
        scheduled.append('$scriptsToExecute += @{Path = "$scriptsDir\\EdgeRemoval.ps1"; '
                         'Name = "EdgeRemoval"; TriggerType = "Startup"}')
    if remove_onedrive:
        parts.append(_embed_script("oneDriveRemovalContent", "OneDriveRemoval.ps1", ONEDRIVE_REMOVAL_SCRIPT))
        scheduled.append('$scriptsToExecute += @{Path = "$scriptsDir\\OneDriveRemoval.ps1"; '
                         'Name = "OneDriveRemoval"; TriggerType = "Logon"}')

    parts.append("# Execute removal scripts and register scheduled tasks\n$scriptsToExecute = @()\n"
                 + "".join(line + "\n" for line in scheduled))
    parts.append(r"""foreach ($script in $scriptsToExecute) {
    if (Test-Path $script.Path) {
        Write-Log "Executing $($script.Name) script..." "INFO"
        try {
            Start-Process powershell.exe -ArgumentList "-ExecutionPolicy Bypass -NoProfile -File `"$($script.Path)`"" -Wait -NoNewWindow
            Write-Log "$($script.Name) execution completed" "SUCCESS"
        } catch {
            Write-Log "$($script.Name) execution failed: $($_.Exception.Message)" "WARNING"
        }

        try {
            $action = New-ScheduledTaskAction -Execute "powershell.exe" -Argument "-ExecutionPolicy Bypass -NoProfile -File `"$($script.Path)`""
            if ($script.TriggerType -eq "Startup") {
                $trigger = New-ScheduledTaskTrigger -AtStartup
            } else {
                $trigger = New-ScheduledTaskTrigger -AtLogOn
            }
            $settings = New-ScheduledTaskSettingsSet -AllowStartIfOnBatteries -DontStopIfGoingOnBatteries -ExecutionTimeLimit 0
            $principal = New-ScheduledTaskPrincipal -UserId "SYSTEM" -LogonType ServiceAccount -RunLevel Highest
            Register-ScheduledTask -TaskName $script.Name -TaskPath "\Winhance" -Action $action -Trigger $trigger -Settings $settings -Principal $principal -Force | Out-Null
            Write-Log "Registered scheduled task: $($script.Name)" "SUCCESS"
        } catch {
            Write-Log "Failed to register task $($script.Name): $($_.Exception.Message)" "ERROR"
        }
    }
}

Write-Log "Windows Apps removal configuration completed" "SUCCESS"
""")
    return "\n".join(parts)


INSTALLER_SCRIPT = r"""$installerPath = "C:\ProgramData\Winhance\Unattend\WinhanceInstaller.exe"
$downloadUrl = "https://github.com/memstechtips/Winhance/releases/latest/download/Winhance.Installer.exe"

try {
    Write-Host "Downloading Winhance Installer from GitHub..." -ForegroundColor Cyan
    New-Item -ItemType Directory -Path (Split-Path $installerPath) -Force | Out-Null
    Invoke-WebRequest -Uri $downloadUrl -OutFile $installerPath -UseBasicParsing
    Write-Host "Launching Winhance Installer..." -ForegroundColor Cyan
    Start-Process -FilePath $installerPath
} catch {
    Write-Host "Error: $($_.Exception.Message)" -ForegroundColor Red
    Write-Host "Press any key to exit..." -ForegroundColor Yellow
    $null = $Host.UI.RawUI.ReadKey('NoEcho,IncludeKeyDown')
}
"""


def installer_bootstrap() -> str:
    """WinhanceInstall.ps1 plus a desktop shortcut for new users."""
    return _embed_script("winhanceInstallContent", "WinhanceInstall.ps1", INSTALLER_SCRIPT) + r"""
try {
    $targetFile = Join-Path $scriptsDir "WinhanceInstall.ps1"
    $shortcutPath = "C:\Users\Default\Desktop\Install Winhance.lnk"
    $WshShell = New-Object -ComObject WScript.Shell
    $shortcut = $WshShell.CreateShortcut($shortcutPath)
    $shortcut.TargetPath = "C:\Windows\System32\WindowsPowerShell\v1.0\powershell.exe"
    $shortcut.Arguments = "-ExecutionPolicy Bypass -NoProfile -File `"$targetFile`""
    $shortcut.IconLocation = "C:\Windows\System32\appwiz.cpl,0"
    $shortcut.WorkingDirectory = "C:\Windows\System32"
    $shortcut.Save()
    # Flag the shortcut as "Run as administrator"
    $bytes = [System.IO.File]::ReadAllBytes($shortcutPath)
    $bytes[21] = 34
    [System.IO.File]::WriteAllBytes($shortcutPath, $bytes)
    Write-Log "Created desktop shortcut: $shortcutPath" "SUCCESS"
} catch {
    Write-Log "Failed to create desktop shortcut: $($_.Exception.Message)" "ERROR"
}
"""


def power_section(plan: Optional[ConfigurationItem], power_settings: List[PowerSettingData]) -> str:
    """POWER PLAN & POWERCFG SETTINGS section; empty when there is nothing to apply."""
    if plan is None and not power_settings:
        return ""

    parts = [banner("POWER PLAN & POWERCFG SETTINGS")]
    if plan is not None:
        schemes = ",\n".join(f'    @{{ Name = "{name}"; Guid = "{guid}" }}' for name, guid in SOURCE_POWER_SCHEMES)
        plan_name = escape_ps(plan.power_plan_name or "Custom Power Plan")
        parts.append(r"""Write-Log 'Setting up power plan: __PLAN_NAME__' "INFO"
$customPlanGuid = "__PLAN_GUID__"

$null = powercfg /query $customPlanGuid 2>&1
if ($LASTEXITCODE -eq 0) {
    Write-Log "Power plan already exists, using existing plan" "INFO"
} else {
    $planCreated = $false
    $sourceSchemes = @(
__SCHEMES__
    )
    foreach ($scheme in $sourceSchemes) {
        $null = powercfg /duplicatescheme $($scheme.Guid) $customPlanGuid 2>&1
        if ($LASTEXITCODE -eq 0) {
            Write-Log "Created power plan from $($scheme.Name)" "SUCCESS"
            powercfg /changename $customPlanGuid '__PLAN_NAME__' | Out-Null
            $planCreated = $true
            break
        }
    }
    if (-not $planCreated) {
        Write-Log "Failed to create power plan" "ERROR"
    }
}
""".replace("__PLAN_NAME__", plan_name).replace("__PLAN_GUID__", plan.power_plan_guid)
                     .replace("__SCHEMES__", indent_block(schemes, "    ")))

    if power_settings:
        hidden = ",\n".join(f'    @{{ Subgroup = "{s}"; Setting = "{g}" }}' for s, g in HIDDEN_POWER_SETTINGS)
        values = ",\n".join(
            f'    @{{ S="{p.subgroup_guid}"; G="{p.setting_guid}"; AC={int(p.ac_value)}; '
            f'DC={int(p.dc_value)}; N=\'{escape_ps(p.description)}\' }}'
            for p in power_settings)
        target = plan.power_plan_guid if plan is not None else "SCHEME_CURRENT"
        parts.append(r"""Write-Log "Enabling hidden power settings..." "INFO"
$PowerSettingsBasePath = "HKLM:\SYSTEM\CurrentControlSet\Control\Power\PowerSettings"
$hiddenSettings = @(
__HIDDEN__
)
foreach ($item in $hiddenSettings) {
    $regPath = Join-Path $PowerSettingsBasePath "$($item.Subgroup)\$($item.Setting)"
    if (Test-Path $regPath) {
        Set-ItemProperty -Path $regPath -Name "Attributes" -Value 0 -Type DWord -ErrorAction SilentlyContinue
    }
}

$settings = @(
__VALUES__
)

$appliedCount = 0
$targetPlanGuid = "__TARGET__"
foreach ($setting in $settings) {
    powercfg /setacvalueindex $targetPlanGuid $setting.S $setting.G $setting.AC 2>$null
    if ($LASTEXITCODE -eq 0) {
        powercfg /setdcvalueindex $targetPlanGuid $setting.S $setting.G $setting.DC 2>$null
        if ($LASTEXITCODE -eq 0) {
            $appliedCount++
        }
    }
}
Write-Log "Applied $appliedCount power settings" "SUCCESS"
""".replace("__HIDDEN__", hidden).replace("__VALUES__", values).replace("__TARGET__", target))

    if plan is not None:
        parts.append(r"""powercfg /setactive __PLAN_GUID__ 2>$null
if ($LASTEXITCODE -eq 0) {
    Write-Log "Power plan activated successfully" "SUCCESS"
} else {
    Write-Log "Failed to activate power plan" "WARNING"
}
""".replace("__PLAN_GUID__", plan.power_plan_guid))
    return "\n".join(parts)


def start_menu_layout() -> str:
    return banner("START MENU LAYOUT") + r"""
Write-Log "Configuring clean Start Menu layout..." "INFO"
$buildNumber = [System.Environment]::OSVersion.Version.Build
Write-Log "Detected Windows build: $buildNumber" "INFO"

if ($buildNumber -ge 22000) {
    Set-RegistryValue -Path 'HKLM:\SOFTWARE\Microsoft\PolicyManager\current\device\Start' -Name 'ConfigureStartPins' -Type 'String' -Value '{"pinnedList":[]}' -Description 'Clean Start Menu'
} else {
    try {
        $ShellPath = "C:\Users\Default\AppData\Local\Microsoft\Windows\Shell"
        New-Item -Path $ShellPath -ItemType Directory -Force | Out-Null
        $xmlContent = @'
<?xml version="1.0" encoding="utf-8"?>
<LayoutModificationTemplate Version="1" xmlns="http://schemas.microsoft.com/Start/2014/LayoutModification">
    <LayoutOptions StartTileGroupCellWidth="6" />
    <DefaultLayoutOverride>
        <StartLayoutCollection>
            <StartLayout GroupCellWidth="6" xmlns="http://schemas.microsoft.com/Start/2014/FullDefaultLayout" />
        </StartLayoutCollection>
    </DefaultLayoutOverride>
</LayoutModificationTemplate>
'@
        $xmlContent | Out-File -FilePath "$ShellPath\LayoutModification.xml" -Encoding UTF8
        Write-Log "Clean Start Menu template created at $ShellPath\LayoutModification.xml" "SUCCESS"
    } catch {
        Write-Log "Failed to create Start Menu template: $($_.Exception.Message)" "ERROR"
    }
}
"""


def reentry_task(settings: BuildSettings) -> str:
    """Scheduled task that runs the script again with -UserCustomizations at every logon."""
    script_path = f"{settings.remote_scripts_dir}\\{settings.script_file_name}"
    return banner("USER CUSTOMIZATIONS SCHEDULED TASK") + r"""
Write-Log "Registering __TASK__ scheduled task..." "INFO"
try {
    $action = New-ScheduledTaskAction -Execute "powershell.exe" -Argument "-ExecutionPolicy Bypass -NoProfile -WindowStyle Hidden -File __SCRIPT__ -UserCustomizations"
    $trigger = New-ScheduledTaskTrigger -AtLogOn
    $settings = New-ScheduledTaskSettingsSet -AllowStartIfOnBatteries -DontStopIfGoingOnBatteries -ExecutionTimeLimit 0
    $principal = New-ScheduledTaskPrincipal -UserId "SYSTEM" -LogonType ServiceAccount -RunLevel Highest
    Register-ScheduledTask -TaskName "__TASK__" -TaskPath "__TASK_PATH__" -Action $action -Trigger $trigger -Settings $settings -Principal $principal -Force | Out-Null
    Write-Log "Registered scheduled task: __TASK__" "SUCCESS"
} catch {
    Write-Log "Failed to register __TASK__ task: $($_.Exception.Message)" "ERROR"
}
""".replace("__TASK__", REENTRY_TASK_NAME).replace("__TASK_PATH__", TASK_PATH).replace("__SCRIPT__", script_path)


def placeholder(scope: str) -> str:
    return f"{banner(f'ADD YOUR {scope} POWERSHELL SCRIPT CONTENTS BELOW')}\n# Start here\n\n# End here\n"


def system_account_handoff(settings: BuildSettings) -> str:
    """
    SYSTEM side of the per-user protocol.

    Waits for an interactive user, exits 0 without a restart when that
    user's marker is already set, otherwise runs this script as the user and
    restarts only if the user run succeeded. Any failure exits 1 so the
    logon task fires again.
    """
    script_path = f"{settings.remote_scripts_dir}\\{settings.script_file_name}"
    return r"""Write-Log "UserCustomizations running as SYSTEM, waiting for a logged-in user..." "INFO"

$targetUser = $null
for ($attempt = 1; $attempt -le __ATTEMPTS__; $attempt++) {
    $targetUser = Get-TargetUser
    if ($targetUser) { break }
    Write-Log "No logged-in user yet (attempt $attempt of __ATTEMPTS__)" "INFO"
    if ($attempt -lt __ATTEMPTS__) {
        Start-Sleep -Seconds __INTERVAL__
    }
}

if (-not $targetUser) {
    Write-Log "No logged-in user detected, the task will run again at next logon" "WARNING"
    exit 1
}

$targetUserSID = Get-UserSID -Username $targetUser
if (-not $targetUserSID) {
    Write-Log "Failed to get SID for user: $targetUser" "ERROR"
    exit 1
}
Write-Log "Target user: $targetUser (SID: $targetUserSID)" "INFO"

$userMarkerPath = "Registry::HKEY_USERS\$targetUserSID\__MARKER_KEY__"
$userApplied = $false
try {
    $value = Get-ItemProperty -Path $userMarkerPath -Name $markerName -ErrorAction SilentlyContinue
    if ($value.$markerName -eq 1) {
        $userApplied = $true
    }
} catch { }

if ($userApplied) {
    Write-Log "User customizations already applied for $targetUser, no restart needed" "INFO"
    exit 0
}

$userCommand = "powershell.exe -ExecutionPolicy Bypass -NoProfile -WindowStyle Hidden -File `"__SCRIPT__`" -UserCustomizations"
if (Start-ProcessAsUser -CommandLine $userCommand -TimeoutMs __TIMEOUT_MS__) {
    Write-Log "User customizations applied for $targetUser, restarting to apply them..." "SUCCESS"
    shutdown.exe /r /t __RESTART_DELAY__
    exit 0
}

Write-Log "User customizations failed or timed out for $targetUser, the task will run again at next logon" "ERROR"
exit 1
""".replace("__ATTEMPTS__", str(settings.user_poll_attempts)) \
        .replace("__INTERVAL__", str(settings.user_poll_interval_seconds)) \
        .replace("__MARKER_KEY__", MARKER_KEY) \
        .replace("__SCRIPT__", script_path) \
        .replace("__TIMEOUT_MS__", str(settings.child_process_timeout_ms)) \
        .replace("__RESTART_DELAY__", str(settings.restart_delay_seconds))


def execution_context_detection() -> str:
    return r"""$currentSid = [Security.Principal.WindowsIdentity]::GetCurrent().User.Value
$runningAsSystem = ($env:USERNAME -eq "SYSTEM" -or $env:USERPROFILE -like "*\system32\config\systemprofile" -or $currentSid -eq "S-1-5-18")
$markerName = "__MARKER_NAME__"
""".replace("__MARKER_NAME__", MARKER_NAME)


def user_marker_check() -> str:
    return r"""Write-Log "UserCustomizations running as user $env:USERNAME" "INFO"
$markerPath = "HKCU:\__MARKER_KEY__"
$alreadyApplied = $false
try {
    if (Test-Path $markerPath) {
        $value = Get-ItemProperty -Path $markerPath -Name $markerName -ErrorAction SilentlyContinue
        if ($value.$markerName -eq 1) {
            $alreadyApplied = $true
        }
    }
} catch { }
""".replace("__MARKER_KEY__", MARKER_KEY)


def user_marker_set() -> str:
    return r"""try {
    if (-not (Test-Path $markerPath)) {
        New-Item -Path $markerPath -Force | Out-Null
    }
    Set-ItemProperty -Path $markerPath -Name $markerName -Value 1 -Type DWord -Force
    Write-Log "User customizations completed and marked as applied" "SUCCESS"
} catch {
    Write-Log "Failed to create completion marker: $($_.Exception.Message)" "ERROR"
    exit 1
}
"""


def completion() -> str:
    return r"""
Write-Log "================================================================================" "INFO"
Write-Log "Windows Optimization & Customization Script Completed" "SUCCESS"
Write-Log "================================================================================" "INFO"
"""
