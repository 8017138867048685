import argparse
import enum
import functools
import os
import pathlib
import platform
import re
import shutil
import stat
import subprocess
import sys

from packaging.version import Version
from portage import output, colorize

__version__ = "0.1"

# portage's terminal output functions
out = output.EOutput()
out.print = lambda s: print(s) if not out.quiet else None
out.green = lambda s: colorize("green", s if isinstance(s, str) else str(s))
out.red = lambda s: colorize("red", s if isinstance(s, str) else str(s))
out.teal = lambda s: colorize("teal", s if isinstance(s, str) else str(s))

# disable colorization for pipes and redirects
if not sys.stdout.isatty():
    output.havecolor = 0

class Exit (enum.IntEnum):
    """Exit codes, one per fatal condition."""
    OK = 0
    NOT_ROOT = 1
    DROPIN_NOT_WRITABLE = 2
    IMAGES_NOT_WRITABLE = 3
    MENUFILE_NOT_WRITABLE = 4
    GENERATOR_MISSING = 5
    STUB_MISSING = 6
    MENUFILE_ACTIVATION = 7
    MENU_RENDER = 8
    BOOTLOADER_UPDATE = 9
    GENERATOR_FAILED = 10
    MENUFILE_CREATION = 11
    USAGE = 12
    UNEXPECTED = 13

class Failure (Exception):
    """A fatal error, terminating the program with the given exit code."""

    def __init__ (self, code: Exit, msg: str):
        super().__init__(msg)
        self.code = code

def version (string: str):
    """Extract the version from a given kernel release string."""
    match = re.match(r"\d+(\.\d+)*", string)
    if not match:
        raise ValueError(f"error: illegal kernel release {string}")
    return Version(match.group())

def latest (modules: pathlib.Path):
    """
    Get the newest kernel with installed modules.

    Args:
        modules (pathlib.Path): the kernel module directory

    Returns:
        str: the newest release found in ``modules`` or the running kernel's
        release if there is none
    """
    releases = []
    if modules.is_dir():
        releases = [
            d.name
            for d in modules.iterdir()
            if d.is_dir() and re.match(r"\d", d.name)
        ]
    if not releases:
        return platform.release()
    return max(releases, key=version)

class Config:

    # grub's drop-in directory
    dropin = pathlib.Path("/etc/grub.d")

    # generated menu fragment
    menufile = dropin / "60_estrogen_dracut_menu"

    # dracut's UEFI image directory
    images = pathlib.Path("/boot/efi/EFI/Linux")

    # kernel module directory
    modules = pathlib.Path("/lib/modules")

    # systemd-boot's EFI stubs, required by dracut --uefi
    stub = pathlib.Path("/usr/lib/systemd/boot")

    # grub device of the EFI system partition
    device = "(hd0,1)"

    # image directory, relative to the EFI system partition
    subpath = "/EFI/Linux/"

    # external tools
    generator = "dracut"
    updater = "update-bootloader"

    # number of images retained when purging
    keep = 3

    # submenu label
    title = "estrogen - Dracut UEFI Images"

    def __init__ (
        self,
        menufile=None,
        images=None,
        kver=None,
        kargs="",
        device=None,
        force=False,
        verbose=False
    ):
        """Construct the settings of a single run, defaults for None."""
        cls = type(self)
        self.menufile = pathlib.Path(menufile or cls.menufile).absolute()
        self.images = pathlib.Path(images or cls.images).absolute()
        self.kver = kver or latest(cls.modules)
        self.kargs = kargs
        self.device = device or cls.device
        self.force = force
        self.verbose = verbose

    def __str__ (self):
        return (
            f"* menufile = {self.menufile}\n"
            f"* images   = {self.images}\n"
            f"* kver     = {self.kver}\n"
            f"* kargs    = {self.kargs}\n"
            f"* device   = {self.device}\n"
        )

def run (argv: list[str]):
    """
    Run an external command to completion.

    Returns:
        subprocess.CompletedProcess: the result, regardless of the exit
        status (127 if the command couldn't be started)
    """
    try:
        return subprocess.run(argv)
    except OSError as e:
        return subprocess.CompletedProcess(argv, 127, stderr=str(e))

def privileged ():
    """Return True if running as root."""
    return os.geteuid() == 0

def writable (path: pathlib.Path):
    """Return True if the given path is writable."""
    return os.access(path, os.W_OK)

def check (config: Config):
    """
    Ensure that the environment is ready for generating images.

    Checks are performed in order and the first failing one raises.

    Raises:
        Failure: on missing privileges, permissions or tools
    """
    if not privileged():
        raise Failure(
            Exit.NOT_ROOT,
            "you need to be root for this action you dummy."
        )
    if not writable(Config.dropin):
        raise Failure(
            Exit.DROPIN_NOT_WRITABLE,
            f"no write permissions to {Config.dropin}"
        )
    if not writable(config.images):
        raise Failure(
            Exit.IMAGES_NOT_WRITABLE,
            f"no write permissions to {config.images}"
        )
    # a missing menu file is created by render, in its parent directory
    menufile = config.menufile
    if not menufile.exists():
        menufile = menufile.parent
    if not writable(menufile):
        raise Failure(
            Exit.MENUFILE_NOT_WRITABLE,
            f"no write permissions to {config.menufile}"
        )
    if not shutil.which(Config.generator):
        raise Failure(
            Exit.GENERATOR_MISSING,
            f"{Config.generator} is not installed"
        )
    if not Config.stub.is_dir():
        raise Failure(Exit.STUB_MISSING, "systemd-boot is not installed")

def images (config: Config):
    """Get the sorted list of image files."""
    if not config.images.is_dir():
        return []
    return sorted(p for p in config.images.glob("*.efi") if p.is_file())

def purge (config: Config):
    """Delete all but the newest images, ignoring failures."""
    out.einfo(f"purging existing images in {out.teal(config.images)}")
    found = sorted(images(config), key=lambda p: p.stat().st_mtime, reverse=True)
    if config.verbose:
        for p in found[:Config.keep]:
            out.print(f"   {out.green('✓')} {out.teal(p)}")
    for p in found[Config.keep:]:
        try:
            p.unlink()
        except OSError as e:
            out.ewarn(f"failed to delete {p}: {e}")
            continue
        out.print(f"   {out.red('✗')} {out.teal(p)}")

def generate (config: Config):
    """Build the UEFI image for the configured kernel."""
    argv = [
        Config.generator,
        "--uefi",
        "--force",
        "--kver", config.kver,
        "--kmoddir", f"{Config.modules / config.kver}/"
    ] + config.kargs.split()
    out.einfo(f"running {out.teal(' '.join(argv))}")
    if run(argv).returncode:
        raise Failure(Exit.GENERATOR_FAILED, f"failed to run {Config.generator}")

def menu (config: Config):
    """
    Render the grub menu fragment.

    The fragment is a shell script, which grub's config generator executes
    and whose output is included in the final configuration. Its second
    line prints everything from the third line onward, which is a submenu
    containing one chainloader entry per image.
    """
    lines = [
        "#!/bin/sh",
        "exec tail -n +3 $0",
        f'submenu "{Config.title}" {{'
    ]
    for img in images(config):
        lines += [
            f"    menuentry 'dracut image {img.name}' {{",
            f"        chainloader {config.device}{Config.subpath}{img.name}",
            "    }"
        ]
    lines.append("}")
    return "\n".join(lines) + "\n"

def render (config: Config):
    """Write the menu fragment and make it executable."""
    out.einfo(f"generating menu {out.teal(config.menufile)}")
    text = menu(config)
    if config.verbose:
        for line in text.splitlines():
            out.print(f"   {out.teal(line)}")
    if not config.menufile.exists():
        try:
            config.menufile.touch()
        except OSError as e:
            raise Failure(
                Exit.MENUFILE_CREATION,
                f"failed to create: {config.menufile}"
            ) from e
    try:
        config.menufile.write_text(text)
    except OSError as e:
        raise Failure(
            Exit.MENU_RENDER,
            "failed to generate the estrogen dracut submenu"
        ) from e
    out.einfo(f"activating {out.teal(config.menufile)}")
    try:
        mode = config.menufile.stat().st_mode
        config.menufile.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    except OSError as e:
        raise Failure(Exit.MENUFILE_ACTIVATION, "failed to activate menufile") from e

def update (config: Config):
    """Regenerate the bootloader configuration."""
    out.einfo(f"running {out.teal(Config.updater)}")
    if run([Config.updater]).returncode:
        raise Failure(
            Exit.BOOTLOADER_UPDATE,
            "failed to update GRUB2 configuration"
        )

def cli (f):
    """A top level exception handling decorator for script main functions."""
    @functools.wraps(f)
    def handler (argv=sys.argv[1:]):
        try:
            r = f(argv)
            return Exit.OK if r is None else r
        except Failure as e:
            out.eerror(f"critical: {e}")
            sys.exit(int(e.code))
        except Exception as e:
            out.eerror(f"critical: {e}")
            sys.exit(int(Exit.UNEXPECTED))
    return handler

class Parser (argparse.ArgumentParser):
    """An argument parser raising a usage failure instead of exiting."""

    def error (self, message):
        self.print_usage(sys.stderr)
        raise Failure(Exit.USAGE, message)

def nonempty (string: str):
    """Argument type rejecting empty paths."""
    if not string:
        raise argparse.ArgumentTypeError("empty path")
    return pathlib.Path(string)

def kernel_args (argv):
    """
    Split the kernel arguments off the command line.

    Every token following ``--kernel-args`` up to the next token starting
    with a dash is a kernel argument, the last occurrence wins.

    Returns:
        tuple: the remaining command line and the list of kernel arguments
    """
    rest = []
    kargs = []
    i = 0
    while i < len(argv):
        if argv[i] != "--kernel-args":
            rest.append(argv[i])
            i += 1
            continue
        j = i + 1
        while j < len(argv) and not argv[j].startswith("-"):
            j += 1
        kargs = argv[i + 1:j]
        i = j
    return rest, kargs

def parse (argv):
    """Parse the command line, joining the kernel arguments with spaces."""
    parser = Parser(
        prog="estrogen",
        description="Generates a GRUB menu for dracut UEFI images.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
        allow_abbrev=False
    )
    parser.add_argument(
        "-f", "--force",
        dest="force",
        action="store_true",
        help="force regeneration of dracut images and GRUB menu"
    )
    parser.add_argument(
        "-p", "--purge",
        dest="purge",
        action="store_true",
        help=f"purge all but the {Config.keep} newest images and exit"
    )
    parser.add_argument(
        "-l", "--uki-location",
        metavar="<dir>",
        dest="images",
        type=nonempty,
        help=f"location of the UEFI kernel images (default: {Config.images})"
    )
    parser.add_argument(
        "-m", "--menufile-location",
        metavar="<file>",
        dest="menufile",
        type=nonempty,
        help=f"location of the GRUB menu file (default: {Config.menufile})"
    )
    parser.add_argument(
        "-k", "--kernel-version",
        metavar="<kver>",
        dest="kver",
        help="kernel version to generate images for (default: latest)"
    )
    parser.add_argument(
        "--kernel-args",
        metavar="<arg>",
        dest="kargs",
        nargs="*",
        default=[],
        help="kernel arguments passed to dracut"
    )
    parser.add_argument(
        "-d", "--boot-device",
        metavar="<dev>",
        dest="device",
        help=f"GRUB device of the EFI system partition (default: {Config.device})"
    )
    parser.add_argument(
        "-v", "--verbose",
        dest="verbose",
        action="store_true",
        help="be verbose"
    )
    parser.add_argument(
        "--help",
        action="help",
        help="display this help and exit"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )
    # argparse would take tokens like -1 as kernel arguments
    argv, kargs = kernel_args(list(argv))
    args = parser.parse_args(argv)
    args.kargs = " ".join(kargs)
    return args

@cli
def main (argv):
    """
    Generate a GRUB menu for dracut UEFI images.
    ============================================

    Build a UEFI image of the given kernel with dracut, write a GRUB menu
    fragment chainloading every image in the image directory and regenerate
    the GRUB configuration.

    Command Line Arguments
    ----------------------

    ``-p``
      purge all but the 3 newest images and exit

    ``-k <kver>``
      kernel version (default: newest installed modules)

    ``--kernel-args <args>``
      additional dracut arguments, up to the next option

    Process Outline
    ---------------

    This command is a mere wrapper to::

      dracut --uefi --force --kver ${kver} --kmoddir /lib/modules/${kver}/
      ./estrogen-menu > /etc/grub.d/60_estrogen_dracut_menu
      chmod +x /etc/grub.d/60_estrogen_dracut_menu
      update-bootloader
    """
    args = parse(argv)
    config = Config(
        menufile=args.menufile,
        images=args.images,
        kver=args.kver,
        kargs=args.kargs,
        device=args.device,
        force=args.force,
        verbose=args.verbose
    )

    # purge old images and exit
    if args.purge:
        purge(config)
        return

    if config.verbose:
        out.print(str(config))

    check(config)
    out.einfo(f"generating image for {out.teal(config.kver)}")
    generate(config)
    render(config)
    update(config)
    out.einfo("submenu generation completed successfully!")

if __name__ == "__main__":
    sys.exit(main())
