"""Built-in skills shipped with relay.

Command templates use ``{{parameter}}`` placeholders. ``name`` typed values are
inserted after sanitizing, every other value is inserted shell-quoted.
"""

from __future__ import annotations

from relay.skills.registry import (
    HandlerKind,
    Platform,
    RiskClass,
    Skill,
    SkillCategory,
    SkillParameter,
    SkillRegistry,
)

LINUX = Platform.LINUX
DARWIN = Platform.DARWIN
WINDOWS = Platform.WINDOWS

QUERY_COMMANDS: dict[str, dict[Platform, str]] = {
    "system-info": {
        DARWIN: "system_profiler SPHardwareDataType",
        WINDOWS: "systeminfo",
        LINUX: "lscpu && free -h",
    },
    "disk-usage": {
        DARWIN: "df -h",
        WINDOWS: "wmic logicaldisk get size,freespace,caption",
        LINUX: "df -h",
    },
    "memory-info": {
        DARWIN: "vm_stat",
        WINDOWS: "wmic memorychip get capacity",
        LINUX: "free -h",
    },
    "process-list": {
        DARWIN: "ps -ax -o pid,%mem,%cpu,comm | head -20",
        WINDOWS: 'powershell "Get-Process | Select-Object -First 20"',
        LINUX: "ps aux | head -20",
    },
    "top-processes": {
        DARWIN: "ps -amcwwwxo pid,%mem,%cpu,command | head -11",
        WINDOWS: (
            'powershell "Get-Process | Sort-Object -Property WS -Descending'
            ' | Select-Object -First 10"'
        ),
        LINUX: "ps aux --sort=-%mem | head -10",
    },
    "network-info": {
        DARWIN: "networksetup -listallhardwareports && ifconfig en0",
        WINDOWS: "ipconfig",
        LINUX: "ip addr",
    },
    "dns-servers": {
        DARWIN: "scutil --dns | grep nameserver | head -5",
        WINDOWS: 'powershell "(Get-DnsClientServerAddress).ServerAddresses"',
        LINUX: "cat /etc/resolv.conf",
    },
    "uptime": {
        DARWIN: "uptime",
        WINDOWS: (
            'powershell "(Get-Date) - (Get-CimInstance Win32_OperatingSystem).LastBootUpTime"'
        ),
        LINUX: "uptime",
    },
    "battery": {
        DARWIN: "pmset -g batt",
        WINDOWS: 'powershell "(Get-WmiObject Win32_Battery).EstimatedChargeRemaining"',
        LINUX: "upower -i /org/freedesktop/UPower/devices/battery_BAT0",
    },
    "startup-apps": {
        DARWIN: (
            "osascript -e 'tell application \"System Events\" to get name of every login item'"
        ),
        WINDOWS: 'powershell "Get-CimInstance Win32_StartupCommand | Select-Object Name, Command"',
        LINUX: "ls ~/.config/autostart",
    },
    "installed-apps": {
        DARWIN: "ls /Applications",
        WINDOWS: (
            'powershell "Get-ItemProperty'
            " HKLM:\\Software\\Microsoft\\Windows\\CurrentVersion\\Uninstall\\*"
            ' | Select-Object DisplayName | Select-Object -First 30"'
        ),
        LINUX: "dpkg --list | head -30",
    },
    "temp-files-size": {
        DARWIN: 'du -sh ~/Library/Caches 2>/dev/null || echo "N/A"',
        WINDOWS: (
            'powershell "(Get-ChildItem $env:TEMP -Recurse -ErrorAction SilentlyContinue'
            ' | Measure-Object -Property Length -Sum).Sum / 1MB"'
        ),
        LINUX: 'du -sh /tmp 2>/dev/null || echo "N/A"',
    },
    "browser-processes": {
        DARWIN: 'ps aux | grep -iE "(Chrome|Safari|Firefox)" | grep -v grep | head -10',
        WINDOWS: (
            "powershell \"Get-Process | Where-Object { $_.Name -match 'chrome|firefox|msedge' }"
            ' | Select-Object -First 10"'
        ),
        LINUX: 'ps aux | grep -E "(chrome|firefox)" | grep -v grep | head -10',
    },
    "printer-status": {
        DARWIN: "lpstat -p",
        WINDOWS: 'powershell "Get-Printer | Select-Object Name,PrinterStatus,JobCount"',
        LINUX: "lpstat -p",
    },
    "printer-queue": {
        DARWIN: "lpstat -o",
        WINDOWS: 'powershell "Get-PrintJob -PrinterName *"',
        LINUX: "lpstat -o",
    },
}

DIAGNOSTIC_COMMANDS: dict[str, dict[Platform, str]] = {
    "quick": {
        LINUX: "uptime && free -h && df -h /",
        DARWIN: "uptime && vm_stat && df -h /",
        WINDOWS: "systeminfo | findstr /C:\"Available Physical Memory\" /C:\"System Boot Time\"",
    },
    "performance": {
        LINUX: "uptime && ps aux --sort=-%cpu | head -6",
        DARWIN: "uptime && ps -arcwwwxo pid,%cpu,%mem,command | head -6",
        WINDOWS: (
            'powershell "Get-Process | Sort-Object -Property CPU -Descending'
            ' | Select-Object -First 5"'
        ),
    },
    "storage": {
        LINUX: "df -h",
        DARWIN: "df -h",
        WINDOWS: "wmic logicaldisk get size,freespace,caption",
    },
    "network": {
        LINUX: "ip route && ping -c 2 -W 2 8.8.8.8",
        DARWIN: "netstat -rn | head -5 && ping -c 2 -t 4 8.8.8.8",
        WINDOWS: "ipconfig && ping -n 2 8.8.8.8",
    },
    "security": {
        LINUX: "ps -eo user,pid,comm --sort=user | head -30",
        DARWIN: "ps -axo user,pid,comm | head -30",
        WINDOWS: 'powershell "Get-MpComputerStatus | Select-Object AntivirusEnabled,RealTimeProtectionEnabled"',
    },
}


def _name(name: str, description: str) -> SkillParameter:
    return SkillParameter(name, type="name", required=True, description=description)


BUILTIN_SKILLS: tuple[Skill, ...] = (
    Skill(
        id="run-diagnostics",
        name="Run Diagnostics",
        category=SkillCategory.SYSTEM,
        description="Run a system health scan",
        ai_description="I can scan your system for performance, storage, network, or security issues.",
        parameters=(
            SkillParameter(
                "diagnosticType",
                default="quick",
                description="Type: quick, performance, storage, network, security",
            ),
        ),
        variant_parameter="diagnosticType",
        variants=DIAGNOSTIC_COMMANDS,
    ),
    Skill(
        id="query-system",
        name="Query System Info",
        category=SkillCategory.SYSTEM,
        description="Get system information",
        ai_description="I can check various system stats and information.",
        parameters=(SkillParameter("queryType", required=True, description="Query to run"),),
        variant_parameter="queryType",
        variants=QUERY_COMMANDS,
    ),
    Skill(
        id="kill-process",
        name="Kill Process",
        category=SkillCategory.SYSTEM,
        description="Stop a specific application",
        ai_description=(
            "I can close applications that are not responding or using too many resources."
        ),
        risk=RiskClass.APPROVAL_REQUIRED,
        parameters=(_name("processName", "Name of the process to kill"),),
        command_templates={
            LINUX: 'pkill -x "{{processName}}" || pkill "{{processName}}"',
            DARWIN: 'pkill -x "{{processName}}" || pkill "{{processName}}"',
            WINDOWS: (
                'taskkill /F /IM "{{processName}}.exe" 2>nul'
                ' || taskkill /F /IM "{{processName}}" 2>nul'
            ),
        },
        handler=HandlerKind.KILL_PROCESS,
    ),
    Skill(
        id="open-app",
        name="Open Application",
        category=SkillCategory.SYSTEM,
        description="Launch an application",
        ai_description="I can open applications for you.",
        risk=RiskClass.APPROVAL_REQUIRED,
        parameters=(_name("appName", "Name of the application"),),
        command_templates={
            LINUX: 'setsid "{{appName}}" >/dev/null 2>&1 &',
            DARWIN: 'open -a "{{appName}}"',
            WINDOWS: 'start "" "{{appName}}"',
        },
    ),
    Skill(
        id="restart-app",
        name="Restart Application",
        category=SkillCategory.SYSTEM,
        description="Close and reopen an application",
        ai_description="I can restart applications to fix issues.",
        risk=RiskClass.APPROVAL_REQUIRED,
        parameters=(_name("appName", "Name of the application"),),
        handler=HandlerKind.RESTART_APP,
    ),
    Skill(
        id="clear-caches",
        name="Clear Caches",
        category=SkillCategory.SYSTEM,
        description="Clear system cache files",
        ai_description="I can clear temporary files and caches to free up space.",
        risk=RiskClass.APPROVAL_REQUIRED,
        command_templates={
            DARWIN: 'rm -rf "$HOME/Library/Caches/"* 2>/dev/null; echo "User caches cleared"',
            WINDOWS: "del /q/f/s %TEMP%\\* 2>nul",
        },
    ),
    Skill(
        id="empty-trash",
        name="Empty Trash",
        category=SkillCategory.SYSTEM,
        description="Empty the trash/recycle bin",
        ai_description="I can empty your trash to free up disk space.",
        risk=RiskClass.APPROVAL_REQUIRED,
        command_templates={
            DARWIN: "rm -rf ~/.Trash/*",
            WINDOWS: (
                'PowerShell.exe -Command "Clear-RecycleBin -Force -ErrorAction SilentlyContinue"'
            ),
            LINUX: "rm -rf ~/.local/share/Trash/*",
        },
    ),
    Skill(
        id="flush-dns",
        name="Flush DNS",
        category=SkillCategory.NETWORK,
        description="Reset network DNS cache",
        ai_description="I can reset your DNS cache to fix website loading issues.",
        risk=RiskClass.APPROVAL_REQUIRED,
        command_templates={
            DARWIN: "sudo dscacheutil -flushcache && sudo killall -HUP mDNSResponder",
            WINDOWS: "ipconfig /flushdns",
            LINUX: "sudo systemd-resolve --flush-caches",
        },
    ),
    Skill(
        id="check-network-speed",
        name="Check Network Speed",
        category=SkillCategory.NETWORK,
        description="Run internet speed and latency test",
        ai_description="I can test your internet speed and connection quality.",
        command_templates={
            LINUX: "ping -c 4 -W 2 1.1.1.1",
            DARWIN: "networkQuality -s || ping -c 4 1.1.1.1",
            WINDOWS: "ping -n 4 1.1.1.1",
        },
    ),
    Skill(
        id="run-deep-scan",
        name="Deep System Scan",
        category=SkillCategory.SYSTEM,
        description="Analyze system logs for errors and crashes",
        ai_description="I can do a deep scan of your system logs to find hidden problems.",
        command_templates={
            LINUX: "journalctl -p err -n 50 --no-pager",
            DARWIN: "log show --last 1h --predicate 'messageType == error' --style compact | tail -50",
            WINDOWS: (
                'powershell "Get-WinEvent -LogName System -MaxEvents 50'
                ' | Where-Object { $_.LevelDisplayName -eq \'Error\' }"'
            ),
        },
    ),
    Skill(
        id="restart-service",
        name="Restart Service",
        category=SkillCategory.SYSTEM,
        description="Restart a system service",
        ai_description="I can restart a background service that has stopped working.",
        risk=RiskClass.APPROVAL_REQUIRED,
        parameters=(_name("serviceName", "Name of the service"),),
        command_templates={
            DARWIN: "launchctl kickstart -k system/{{serviceName}}",
            WINDOWS: 'net stop "{{serviceName}}" && net start "{{serviceName}}"',
            LINUX: "sudo systemctl restart {{serviceName}}",
        },
    ),
    Skill(
        id="run-command",
        name="Run Custom Command",
        category=SkillCategory.SYSTEM,
        description="Run a custom shell command after the user approves it",
        risk=RiskClass.APPROVAL_REQUIRED,
        parameters=(SkillParameter("command", required=True, description="Shell command"),),
        handler=HandlerKind.RAW_COMMAND,
    ),
    # utility skills run in-process
    Skill(
        id="generate-password",
        name="Generate Password",
        category=SkillCategory.UTILITY,
        description="Create a secure random password",
        ai_description="I can generate a strong, secure password for you.",
        parameters=(
            SkillParameter("length", type="number", default="16"),
            SkillParameter("includeSymbols", type="boolean", default="true"),
            SkillParameter("includeNumbers", type="boolean", default="true"),
        ),
        handler=HandlerKind.IN_PROCESS,
    ),
    Skill(
        id="file-hash",
        name="Calculate File Hash",
        category=SkillCategory.UTILITY,
        description="Calculate checksum to verify file integrity",
        ai_description="I can calculate a file checksum to verify downloads.",
        parameters=(
            SkillParameter("filePath", type="path", required=True),
            SkillParameter("algorithm", default="sha256"),
        ),
        handler=HandlerKind.IN_PROCESS,
    ),
    Skill(
        id="format-json",
        name="Format JSON",
        category=SkillCategory.UTILITY,
        description="Pretty-print and format JSON data",
        ai_description="I can format messy JSON to make it readable.",
        parameters=(SkillParameter("jsonString", required=True),),
        handler=HandlerKind.IN_PROCESS,
    ),
    Skill(
        id="text-stats",
        name="Text Statistics",
        category=SkillCategory.UTILITY,
        description="Count words, characters, sentences in text",
        ai_description="I can count words and characters in your text.",
        parameters=(SkillParameter("text", required=True),),
        handler=HandlerKind.IN_PROCESS,
    ),
    Skill(
        id="convert-case",
        name="Convert Text Case",
        category=SkillCategory.UTILITY,
        description="Convert text to UPPER, lower, or Title Case",
        ai_description="I can convert text between uppercase, lowercase, and title case.",
        parameters=(
            SkillParameter("text", required=True),
            SkillParameter(
                "caseType",
                required=True,
                description="Case type: upper, lower, title, sentence, toggle",
            ),
        ),
        handler=HandlerKind.IN_PROCESS,
    ),
    Skill(
        id="remove-duplicate-lines",
        name="Remove Duplicate Lines",
        category=SkillCategory.UTILITY,
        description="Remove repeated lines from text",
        ai_description="I can remove duplicate lines from a list.",
        parameters=(SkillParameter("text", required=True),),
        handler=HandlerKind.IN_PROCESS,
    ),
    Skill(
        id="base64-encode",
        name="Base64 Encode",
        category=SkillCategory.UTILITY,
        description="Encode text to Base64",
        ai_description="I can encode text to Base64 format.",
        parameters=(SkillParameter("text", required=True),),
        handler=HandlerKind.IN_PROCESS,
    ),
    Skill(
        id="base64-decode",
        name="Base64 Decode",
        category=SkillCategory.UTILITY,
        description="Decode Base64 to text",
        ai_description="I can decode Base64 back to normal text.",
        parameters=(SkillParameter("encoded", required=True),),
        handler=HandlerKind.IN_PROCESS,
    ),
    # media skills write next to or over their input files
    Skill(
        id="video-to-gif",
        name="Video to GIF",
        category=SkillCategory.MEDIA,
        description="Convert a video or screen recording to GIF",
        ai_description="I can convert your videos or screen recordings to animated GIFs.",
        risk=RiskClass.APPROVAL_REQUIRED,
        parameters=(
            SkillParameter("inputPath", type="path", required=True),
            SkillParameter("fps", type="number", default="10"),
            SkillParameter("width", type="number", default="480"),
        ),
        command_templates={
            platform: (
                "ffmpeg -y -i {{inputPath}} -vf fps={{fps}},scale={{width}}:-1:flags=lanczos"
                " -loop 0 {{inputPath}}.gif"
            )
            for platform in Platform
        },
    ),
    Skill(
        id="heic-to-jpg",
        name="HEIC to JPG",
        category=SkillCategory.MEDIA,
        description="Convert iPhone HEIC photos to JPG format",
        ai_description="I can convert iPhone photos (HEIC) to standard JPG format.",
        risk=RiskClass.APPROVAL_REQUIRED,
        parameters=(
            SkillParameter("inputPath", type="path", required=True),
            SkillParameter("quality", type="number", default="90"),
        ),
        command_templates={
            DARWIN: (
                "sips -s format jpeg -s formatOptions {{quality}} {{inputPath}}"
                " --out {{inputPath}}.jpg"
            ),
            LINUX: "convert {{inputPath}} -quality {{quality}} {{inputPath}}.jpg",
        },
    ),
    Skill(
        id="resize-image",
        name="Resize Image",
        category=SkillCategory.MEDIA,
        description="Resize an image to a fixed width",
        ai_description="I can resize your images to any size you need.",
        risk=RiskClass.APPROVAL_REQUIRED,
        parameters=(
            SkillParameter("inputPath", type="path", required=True),
            SkillParameter("width", type="number", required=True),
        ),
        command_templates={
            DARWIN: "sips --resampleWidth {{width}} {{inputPath}}",
            LINUX: "convert {{inputPath}} -resize {{width}} {{inputPath}}",
            WINDOWS: "magick {{inputPath}} -resize {{width}} {{inputPath}}",
        },
    ),
    Skill(
        id="compress-image",
        name="Compress Image",
        category=SkillCategory.MEDIA,
        description="Reduce image file size",
        ai_description="I can compress your images to reduce file size.",
        risk=RiskClass.APPROVAL_REQUIRED,
        parameters=(
            SkillParameter("inputPath", type="path", required=True),
            SkillParameter("quality", type="number", default="80"),
        ),
        command_templates={
            DARWIN: "sips -s formatOptions {{quality}} {{inputPath}}",
            LINUX: "convert {{inputPath}} -quality {{quality}} {{inputPath}}",
            WINDOWS: "magick {{inputPath}} -quality {{quality}} {{inputPath}}",
        },
    ),
    Skill(
        id="compress-pdf",
        name="Compress PDF",
        category=SkillCategory.MEDIA,
        description="Reduce PDF file size",
        ai_description="I can compress PDFs to make them smaller for sharing.",
        risk=RiskClass.APPROVAL_REQUIRED,
        parameters=(
            SkillParameter("inputPath", type="path", required=True),
            SkillParameter("quality", default="ebook"),
        ),
        command_templates={
            platform: (
                "gs -sDEVICE=pdfwrite -dPDFSETTINGS=/{{quality}} -dNOPAUSE -dBATCH"
                " -sOutputFile={{inputPath}}.compressed.pdf {{inputPath}}"
            )
            for platform in (LINUX, DARWIN)
        },
    ),
    Skill(
        id="split-pdf",
        name="Split PDF",
        category=SkillCategory.MEDIA,
        description="Extract a page range from a PDF",
        ai_description="I can extract specific pages from your PDF.",
        risk=RiskClass.APPROVAL_REQUIRED,
        parameters=(
            SkillParameter("inputPath", type="path", required=True),
            SkillParameter("firstPage", type="number", required=True),
            SkillParameter("lastPage", type="number", required=True),
        ),
        command_templates={
            platform: (
                "gs -sDEVICE=pdfwrite -dNOPAUSE -dBATCH -dFirstPage={{firstPage}}"
                " -dLastPage={{lastPage}} -sOutputFile={{inputPath}}.pages.pdf {{inputPath}}"
            )
            for platform in (LINUX, DARWIN)
        },
    ),
    Skill(
        id="merge-pdfs",
        name="Merge PDFs",
        category=SkillCategory.MEDIA,
        description="Combine two PDFs into one",
        ai_description="I can combine multiple PDFs into a single file.",
        risk=RiskClass.APPROVAL_REQUIRED,
        parameters=(
            SkillParameter("firstPath", type="path", required=True),
            SkillParameter("secondPath", type="path", required=True),
        ),
        command_templates={
            platform: (
                "gs -dBATCH -dNOPAUSE -sDEVICE=pdfwrite -sOutputFile={{firstPath}}.merged.pdf"
                " {{firstPath}} {{secondPath}}"
            )
            for platform in (LINUX, DARWIN)
        },
    ),
)


def default_registry() -> SkillRegistry:
    return SkillRegistry(BUILTIN_SKILLS)
